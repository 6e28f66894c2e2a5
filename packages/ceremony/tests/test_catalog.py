import pytest

from ceremony.catalog import (
    DEFAULT_CATALOG,
    Catalog,
    CircuitIdentity,
    Family,
    Kind,
    families_for_version,
    identity_from_name,
    parse_families,
)
from ceremony.errors import UnrecognizedArtifactName


def test_family_sizes():
    assert len(DEFAULT_CATALOG.enumerate(Family.V1)) == 27
    assert len(DEFAULT_CATALOG.enumerate(Family.V2)) == 68
    assert len(DEFAULT_CATALOG.enumerate(Family.BATCH)) == 3
    assert len(DEFAULT_CATALOG) == 98


def test_canonical_names():
    v2 = DEFAULT_CATALOG.names(Family.V2)
    assert "v2_combined_32_1_2" in v2
    assert "v2_inclusion_32_20" in v2
    assert "v2_non-inclusion_40_32" in v2
    assert DEFAULT_CATALOG.names(Family.BATCH) == [
        "batch_append_32_500",
        "batch_update_32_500",
        "batch_address-append_40_250",
    ]
    assert "v1_combined_26_8_4" in DEFAULT_CATALOG.names(Family.V1)


def test_every_name_resolves_to_its_identity():
    for identity in DEFAULT_CATALOG:
        assert identity_from_name(identity.name) == identity


def test_combined_name_implies_family_height():
    identity = identity_from_name("v2_combined_32_1_2")
    assert identity.heights == (32, 40)
    assert identity.counts == (1, 2)
    v1 = identity_from_name("v1_combined_26_3_4")
    assert v1.heights == (26, 26)


def test_four_number_combined_name():
    identity = identity_from_name("v1_combined_26_26_2_4")
    assert identity == CircuitIdentity(Family.V1, Kind.COMBINED, (26, 26), (2, 4))


def test_bare_names_use_height_hints():
    assert identity_from_name("inclusion_26_3").family is Family.V1
    assert identity_from_name("non-inclusion_40_5").family is Family.V2
    assert identity_from_name("address-append_40_250").family is Family.BATCH
    assert identity_from_name("combined_32_2_2").heights == (32, 40)


def test_batch_kind_under_v2_prefix_is_batch():
    assert identity_from_name("v2_append_32_500").family is Family.BATCH


def test_key_name_for_v1_combined():
    identity = identity_from_name("v1_combined_26_1_2")
    assert identity.key_name == "v1_combined_26_26_1_2"
    assert identity_from_name("v2_combined_32_1_2").key_name == "v2_combined_32_1_2"


@pytest.mark.parametrize(
    "name",
    [
        "v3_inclusion_32_1",
        "v2_widget_32_1",
        "v2_inclusion_32",
        "v2_inclusion_32_x",
        "v2_inclusion_32_²",
        "v2_combined_32_1",
        "batch_inclusion_32_1",
    ],
)
def test_unrecognized_names(name):
    with pytest.raises(UnrecognizedArtifactName):
        identity_from_name(name)


def test_flags():
    v1 = identity_from_name("v1_inclusion_26_2")
    assert v1.generator_args() == [
        "--circuit", "inclusion",
        "--inclusion-tree-height", "26",
        "--inclusion-compressed-accounts", "2",
        "--legacy",
    ]
    assert v1.import_args()[-1] == "--v1"
    batch = identity_from_name("batch_address-append_40_250")
    assert batch.parameter_args() == [
        "--circuit", "address-append",
        "--address-append-tree-height", "40",
        "--address-append-batch-size", "250",
    ]
    combined = identity_from_name("v2_combined_32_3_4")
    assert "--non-inclusion-tree-height" in combined.import_args()
    assert "--v1" not in combined.import_args()


def test_versions_and_selectors():
    assert families_for_version("v2") == (Family.V2, Family.BATCH)
    assert families_for_version("v1") == (Family.V1,)
    with pytest.raises(ValueError):
        families_for_version("v3")
    assert parse_families("all") == (Family.V1, Family.V2, Family.BATCH)
    assert parse_families("batch") == (Family.BATCH,)
    with pytest.raises(ValueError):
        parse_families("v9")


def test_duplicate_names_rejected():
    identity = CircuitIdentity(Family.V2, Kind.INCLUSION, (32,), (1,))
    with pytest.raises(ValueError):
        Catalog({Family.V2: [identity, identity]})
