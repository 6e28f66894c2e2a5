import pytest

from conftest import FakeBinary, FakeProver, write_initial, write_round
from ceremony.catalog import Family, identity_from_name
from ceremony.errors import MissingPredecessorState
from ceremony.finalizer import (
    CHECKSUM_FILE,
    check_checksums,
    deployed_key_name,
    finalize,
    latest_contribution,
    r1cs_resolvers,
    resolve_r1cs,
)
from ceremony.storage import contribution_key


@pytest.fixture
def ceremony_dirs(tmp_path, small_catalog):
    contributions = tmp_path / "contributions"
    write_initial(contributions / "0000_initial", small_catalog)
    write_round(contributions / "0001_alice", small_catalog, ["alice"])
    write_round(contributions / "0002_bob", small_catalog, ["alice", "bob"])
    return {
        "contributions_dir": contributions,
        "initial_dir": contributions / "0000_initial",
        "r1cs_dir": tmp_path / "r1cs",
        "keys_dir": tmp_path / "keys",
        "output_dir": tmp_path / "out",
        "deploy_dir": tmp_path / "deploy",
    }


def test_latest_contribution(ceremony_dirs, store, tmp_path):
    assert latest_contribution(ceremony_dirs["contributions_dir"]) == "0002_bob"
    src = tmp_path / "x.ph2"
    src.write_text("x")
    store.upload(src, contribution_key("0007_zed", "v1", "x.ph2"))
    assert latest_contribution(tmp_path / "empty", store) == "0007_zed"
    assert latest_contribution(tmp_path / "empty") is None


def test_finalize_builds_and_deploys(ceremony_dirs, small_catalog, fake_binary, fake_prover):
    report = finalize("0002_bob", binary=fake_binary, prover=fake_prover, catalog=small_catalog, **ceremony_dirs)

    assert report.ok
    assert report.extracted == report.built == len(small_catalog)
    deploy = ceremony_dirs["deploy_dir"]
    assert (deploy / "v2_combined_32_1_2.key").is_file()
    assert (deploy / "batch_append_32_500.vkey").is_file()
    assert report.checksum_entries == 2 * len(small_catalog)

    lines = (deploy / CHECKSUM_FILE).read_text().splitlines()
    names = [line.split("  ")[1] for line in lines]
    assert names == sorted(names)
    assert all(len(line.split("  ")[0]) == 64 for line in lines)
    # the key comes from the final round's commitment
    assert "contrib:v1_inclusion_26_1_bob_contribution_0002.ph2" in (deploy / "v1_inclusion_26_1.key").read_text()


def test_finalize_is_idempotent(ceremony_dirs, small_catalog, fake_binary):
    finalize("0002_bob", binary=fake_binary, prover=FakeProver(), catalog=small_catalog, **ceremony_dirs)
    assert len(fake_binary.extracted) == len(small_catalog)
    first = (ceremony_dirs["deploy_dir"] / CHECKSUM_FILE).read_text()

    binary, prover = FakeBinary(), FakeProver()
    report = finalize("0002_bob", binary=binary, prover=prover, catalog=small_catalog, **ceremony_dirs)
    assert binary.extracted == []
    assert report.skipped == len(small_catalog)
    assert report.built == 0
    assert prover.imports == []
    assert (ceremony_dirs["deploy_dir"] / CHECKSUM_FILE).read_text() == first


def test_failures_are_counted_not_fatal(ceremony_dirs, small_catalog, fake_binary):
    (ceremony_dirs["contributions_dir"] / "0002_bob" / "v1" / "v1_inclusion_26_2_bob_contribution_0002.ph2").unlink()
    prover = FakeProver(fail={"v2_inclusion_32_1"})
    report = finalize("0002_bob", binary=fake_binary, prover=prover, catalog=small_catalog, **ceremony_dirs)
    assert not report.ok
    assert report.missing == ["v1_inclusion_26_2"]
    assert report.build_failed == ["v2_inclusion_32_1"]
    assert report.built == len(small_catalog) - 2


def test_family_selection(ceremony_dirs, small_catalog, fake_binary, fake_prover):
    report = finalize(
        "0002_bob", binary=fake_binary, prover=fake_prover, catalog=small_catalog, families=[Family.BATCH], **ceremony_dirs
    )
    assert report.built == 1
    assert [identity.name for identity, _, _ in fake_prover.imports] == ["batch_append_32_500"]


def test_unknown_contribution(ceremony_dirs, small_catalog, fake_binary, fake_prover):
    with pytest.raises(MissingPredecessorState):
        finalize("0009_nobody", binary=fake_binary, prover=fake_prover, catalog=small_catalog, **ceremony_dirs)


def test_finalize_downloads_from_store(ceremony_dirs, small_catalog, seeded_store, fake_binary, fake_prover, tmp_path):
    round_dir = ceremony_dirs["contributions_dir"] / "0002_bob"
    for family in small_catalog.families:
        seeded_store.upload_tree(round_dir / family.value, contribution_key("0003_carol", family.value))
    report = finalize(
        "0003_carol", binary=fake_binary, prover=fake_prover, catalog=small_catalog, store=seeded_store, **ceremony_dirs
    )
    assert report.built == len(small_catalog)
    assert (ceremony_dirs["contributions_dir"] / "0003_carol" / "v1").is_dir()


def test_r1cs_resolution_order(tmp_path):
    contribution, initial, flat = tmp_path / "c", tmp_path / "i", tmp_path / "r1cs"
    for path in (
        contribution / "v2" / "r1cs" / "v2_inclusion_32_1.r1cs",
        initial / "v2" / "r1cs" / "v2_inclusion_32_1.r1cs",
        initial / "v1" / "r1cs" / "v1_inclusion_26_1.r1cs",
        flat / "v2_inclusion_32_2.r1cs",
    ):
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(path.name)

    resolvers = r1cs_resolvers(contribution, initial, flat)
    assert resolve_r1cs("v2_inclusion_32_1", resolvers) == contribution / "v2" / "r1cs" / "v2_inclusion_32_1.r1cs"
    assert resolve_r1cs("inclusion_26_1", resolvers) == initial / "v1" / "r1cs" / "v1_inclusion_26_1.r1cs"
    assert resolve_r1cs("v2_inclusion_32_2", resolvers) == flat / "v2_inclusion_32_2.r1cs"
    assert resolve_r1cs("v2_inclusion_32_3", resolvers) is None


def test_deployed_key_name(tmp_path):
    combined = identity_from_name("v1_combined_26_1_1")
    assert deployed_key_name(tmp_path / "v1_combined_26_1_1.r1cs", combined) == "v1_combined_26_26_1_1"
    assert deployed_key_name(tmp_path / "combined_26_1_1.r1cs", combined) == "combined_26_26_1_1"
    inclusion = identity_from_name("v2_inclusion_32_4")
    assert deployed_key_name(tmp_path / "v2_inclusion_32_4.r1cs", inclusion) == "v2_inclusion_32_4"


def test_check_checksums(ceremony_dirs, small_catalog, fake_binary, fake_prover):
    finalize("0002_bob", binary=fake_binary, prover=fake_prover, catalog=small_catalog, **ceremony_dirs)
    deploy = ceremony_dirs["deploy_dir"]
    assert set(check_checksums(deploy).values()) == {"ok"}

    (deploy / "v1_inclusion_26_1.key").write_text("tampered")
    (deploy / "v2_inclusion_32_1.vkey").unlink()
    (deploy / "extra.key").write_text("x")
    status = check_checksums(deploy)
    assert status["v1_inclusion_26_1.key"] == "mismatch"
    assert status["v2_inclusion_32_1.vkey"] == "missing"
    assert status["extra.key"] == "unlisted"
