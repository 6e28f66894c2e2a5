import pytest

from conftest import FakeBinary
from ceremony.attestation import AttestationRecord
from ceremony.catalog import Family
from ceremony.errors import ContributionNotProduced, EmptyRound
from ceremony.executor import Workspace, execute_round
from ceremony.grants import issue_grants
from ceremony.retry import BackoffPolicy
from ceremony.schemas import ExchangeManifest, FamilyGrants
from ceremony.storage import contribution_key


def no_sleep(seconds):
    pass


def run(manifest, binary, base, **kwargs):
    return execute_round(
        manifest, binary, base_dir=base, policy=BackoffPolicy(max_attempts=2), sleep=no_sleep, **kwargs
    )


def test_full_round_uploads_every_family(seeded_store, small_catalog, fake_binary, tmp_path):
    manifest = issue_grants(seeded_store, "alice", "0000_initial")
    result = run(manifest, fake_binary, tmp_path / "work")

    assert result.contribution_id == "0001_alice"
    assert result.families == [Family.V1, Family.V2, Family.BATCH]
    assert len(fake_binary.contributed) == len(small_catalog)
    for family in small_catalog.families:
        names = seeded_store.list_keys(contribution_key("0001_alice", family.value), ".ph2")
        assert len(names) == len(small_catalog.names(family))
        assert seeded_store.exists(contribution_key("0001_alice", family.value, "contribution_hashes.txt"))

    record = AttestationRecord.load(result.workspace.attestation_path)
    assert record.contribution_id == "0001_alice"
    assert record.hashes()["v2_inclusion_32_1"] == "hash-v2_inclusion_32_1_alice_contribution_0001"
    assert len(record.hashes()) == len(small_catalog)
    assert result.attestation_sha256
    assert result.link.sealed


def test_attestation_is_cumulative_per_family(seeded_store, fake_binary, tmp_path):
    manifest = issue_grants(seeded_store, "alice", "0000_initial")
    run(manifest, fake_binary, tmp_path / "work")
    out = tmp_path / "v1_hashes.txt"
    seeded_store.download(contribution_key("0001_alice", "v1", "contribution_hashes.txt"), out)
    v1_only = AttestationRecord.load(out).hashes()
    assert set(v1_only) == {"v1_inclusion_26_1", "v1_inclusion_26_2"}


def test_inputs_retained_for_offline_verification(seeded_store, fake_binary, tmp_path):
    manifest = issue_grants(seeded_store, "alice", "0000_initial")
    result = run(manifest, fake_binary, tmp_path / "work")
    retained = sorted(p.name for p in result.workspace.verify_inputs(Family.V1).iterdir())
    assert retained == ["v1_inclusion_26_1_0000.ph2", "v1_inclusion_26_2_0000.ph2"]
    assert list(result.workspace.download.iterdir()) == []


def test_second_round_builds_on_first(seeded_store, tmp_path):
    run(issue_grants(seeded_store, "alice", "0000_initial"), FakeBinary(), tmp_path / "a")
    binary = FakeBinary()
    result = run(issue_grants(seeded_store, "bob", "0001_alice"), binary, tmp_path / "b")
    assert result.contribution_id == "0002_bob"
    assert "v1_inclusion_26_1_alice_contribution_0001.ph2" in binary.contributed

    out = tmp_path / "bob.ph2"
    seeded_store.download(
        contribution_key("0002_bob", "v1", "v1_inclusion_26_1_bob_contribution_0002.ph2"), out
    )
    assert out.read_text().splitlines() == [
        "root:v1_inclusion_26_1",
        "contrib:v1_inclusion_26_1_alice_contribution_0001.ph2",
        "contrib:v1_inclusion_26_1_bob_contribution_0002.ph2",
    ]


def test_family_filter_leaves_other_families_alone(seeded_store, fake_binary, tmp_path):
    manifest = issue_grants(seeded_store, "alice", "0000_initial")
    result = run(manifest, fake_binary, tmp_path / "work", families=[Family.BATCH])
    assert result.families == [Family.BATCH]
    assert fake_binary.contributed == ["batch_append_32_500_0000.ph2"]
    assert seeded_store.children(contribution_key("0001_alice")) == ["batch"]


def test_missing_output_aborts_with_cleanup_hint(seeded_store, tmp_path):
    binary = FakeBinary(skip_outputs={"v1_inclusion_26_2_alice_contribution_0001.ph2"})
    manifest = issue_grants(seeded_store, "alice", "0000_initial")
    with pytest.raises(ContributionNotProduced) as exc:
        run(manifest, binary, tmp_path / "work")
    assert "v1_inclusion_26_2" in str(exc.value)
    assert "rm -rf" in exc.value.remedy
    assert seeded_store.children(contribution_key("0001_alice")) == []


def test_empty_family_is_an_error(fake_binary, tmp_path):
    manifest = ExchangeManifest.build("alice", "0000_initial", [FamilyGrants(version=Family.V2)])
    with pytest.raises(EmptyRound):
        run(manifest, fake_binary, tmp_path / "work")


def test_selecting_absent_family_is_an_error(seeded_store, fake_binary, tmp_path):
    manifest = issue_grants(seeded_store, "alice", "0000_initial", families=[Family.V1])
    with pytest.raises(EmptyRound):
        run(manifest, fake_binary, tmp_path / "work", families=[Family.V2])
    assert fake_binary.contributed == []


def test_workspace_layout(tmp_path):
    ws = Workspace.create(tmp_path, now=1700000000)
    assert ws.root.name == "ceremony_contribution_1700000000"
    assert ws.download.is_dir() and ws.output.is_dir() and ws.verify_inputs().is_dir()
    Workspace.create(tmp_path, now=1700000100)
    assert Workspace.latest(tmp_path).root.name == "ceremony_contribution_1700000100"
    assert f"rm -rf {ws.root}" in ws.remedy()
