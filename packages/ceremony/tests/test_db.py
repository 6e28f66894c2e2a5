import pytest

from ceremony.catalog import Family
from ceremony.db import Ledger
from ceremony.errors import DuplicateContributionId


@pytest.fixture
def ledger(tmp_path):
    return Ledger(f"sqlite:///{tmp_path / 'ceremony.db'}")


def test_record_issue(ledger):
    row = ledger.record_issue("0001_alice", "alice", "0000_initial", [Family.V1, Family.BATCH], "urls.json")
    assert row.id is not None
    [stored] = ledger.issued("0001_alice")
    assert stored.families == "v1,batch"
    assert stored.manifest_path == "urls.json"
    assert ledger.issued("0002_bob") == []


def test_reissue_same_predecessor_is_allowed(ledger):
    ledger.record_issue("0001_alice", "alice", "0000_initial", [Family.V1])
    ledger.record_issue("0001_alice", "alice", "0000_initial", [Family.V2])
    assert [r.families for r in ledger.issued("0001_alice")] == ["v1", "v2"]


def test_conflicting_predecessor_is_rejected(ledger):
    ledger.record_issue("0002_bob", "bob", "0001_alice", [Family.V1])
    with pytest.raises(DuplicateContributionId) as exc:
        ledger.record_issue("0002_bob", "bob", "0001_amy", [Family.V1])
    assert "0001_alice" in str(exc.value)
    assert len(ledger.issued()) == 1


def test_verdict_rows(ledger):
    count = ledger.record_verdict(
        "0001_alice",
        [(Family.V1, "v1_inclusion_26_1", "PASS", None), ("v2", "v2_inclusion_32_1", "FAIL", "rejected")],
    )
    assert count == 2
    rows = ledger.audits("0001_alice")
    assert [(r.family, r.circuit, r.outcome) for r in rows] == [
        ("v1", "v1_inclusion_26_1", "PASS"),
        ("v2", "v2_inclusion_32_1", "FAIL"),
    ]
    assert rows[1].detail == "rejected"
