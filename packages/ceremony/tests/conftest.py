import os
import stat
import sys
from pathlib import Path

import pytest

# allow "packages" imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..")))

from ceremony.catalog import Catalog, Family, Kind
from ceremony.chain import derive_output_name, initial_name
from ceremony.storage import LocalStore, contribution_key

SMALL_TABLE = {
    Family.V1: [(Kind.INCLUSION, (26,), [(1, 2)])],
    Family.V2: [
        (Kind.INCLUSION, (32,), [(1, 2)]),
        (Kind.COMBINED, (32, 40), [(1,), (2,)]),
    ],
    Family.BATCH: [(Kind.APPEND, (32,), [(500,)])],
}


class FakeBinary:
    """In-process stand-in for the setup binary.

    A commitment is a text file: the round-zero line followed by one line per
    contribution. Verification accepts a candidate whose first line is the
    initial's and whose later lines are all contributions.
    """

    def __init__(self, skip_outputs=()):
        self.skip_outputs = set(skip_outputs)
        self.contributed = []
        self.verified = []
        self.extracted = []

    def phase1_import(self, ptau, ph1):
        Path(ph1).write_text("ph1\n")
        return Path(ph1)

    def phase2_new(self, ph1, r1cs, ph2):
        Path(ph2).write_text(f"root:{Path(r1cs).stem}\n")
        return Path(ph2)

    def contribute(self, ph2_in, ph2_out):
        self.contributed.append(Path(ph2_in).name)
        if Path(ph2_out).name in self.skip_outputs:
            return "error: nothing written"
        text = Path(ph2_in).read_text()
        Path(ph2_out).write_text(text + f"contrib:{Path(ph2_out).name}\n")
        return f"hash-{Path(ph2_out).stem}"

    def verify(self, candidate, initial):
        self.verified.append((Path(candidate).name, Path(initial).name))
        lines = Path(candidate).read_text().splitlines()
        root = Path(initial).read_text().splitlines()
        return bool(lines) and lines[0] == root[0] and all(l.startswith("contrib:") for l in lines[1:])

    def extract_keys(self, ph2, workdir):
        self.extracted.append(Path(ph2).name)
        (Path(workdir) / "pk").write_text("pk:" + Path(ph2).read_text())
        (Path(workdir) / "vk").write_text("vk:" + Path(ph2).read_text())
        return Path(workdir) / "pk", Path(workdir) / "vk"


class FakeProver:
    def __init__(self, fail=()):
        self.fail = set(fail)
        self.imports = []

    def generate_r1cs(self, identity, output):
        Path(output).write_text(f"r1cs:{identity.name}\n")
        return Path(output)

    def import_setup(self, identity, r1cs, pk, vk, output, vkey_output):
        self.imports.append((identity, Path(r1cs).name, Path(output).name))
        if identity.name in self.fail:
            return False
        Path(output).write_text(f"key:{Path(pk).read_text()}")
        Path(vkey_output).write_text(f"vkey:{Path(vk).read_text()}")
        return True


FAKE_SETUP_SCRIPT = """#!/bin/sh
cmd="$1"; shift
case "$cmd" in
  p1i) echo ph1 > "$2" ;;
  p2n) echo "root:$(basename "$2" .r1cs)" > "$3" ;;
  p2c)
    cp "$1" "$2"
    echo "contrib:$(basename "$2")" >> "$2"
    echo "Contributing..."
    echo "hash-$(basename "$2" .ph2)"
    ;;
  p2v)
    [ "$(head -n 1 "$1")" = "$(head -n 1 "$2")" ] || { echo "mismatch"; exit 1; }
    ;;
  key) echo pk > pk; echo vk > vk ;;
  *) echo "unknown command $cmd"; exit 2 ;;
esac
"""


@pytest.fixture
def small_catalog():
    return Catalog.from_table(SMALL_TABLE)


@pytest.fixture
def fake_binary():
    return FakeBinary()


@pytest.fixture
def fake_prover():
    return FakeProver()


@pytest.fixture
def setup_script(tmp_path):
    path = tmp_path / "bin" / "semaphore-mtb-setup"
    path.parent.mkdir()
    path.write_text(FAKE_SETUP_SCRIPT)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def write_initial(initial_dir: Path, catalog: Catalog, families=None, evals=False):
    """Lay out a round-zero directory the way ``init`` does."""
    for family in families or catalog.families:
        family_dir = Path(initial_dir) / family.value
        (family_dir / "r1cs").mkdir(parents=True, exist_ok=True)
        for identity in catalog.enumerate(family):
            (family_dir / initial_name(identity.name)).write_text(f"root:{identity.name}\n")
            (family_dir / "r1cs" / f"{identity.name}.r1cs").write_text(f"r1cs:{identity.name}\n")
            if evals:
                (family_dir / initial_name(identity.name, ".evals")).write_text("evals\n")


@pytest.fixture
def store(tmp_path):
    return LocalStore(tmp_path / "store")


@pytest.fixture
def seeded_store(store, small_catalog, tmp_path):
    """A local store holding round zero for every family of the small catalog."""
    initial = tmp_path / "seed" / "0000_initial"
    write_initial(initial, small_catalog)
    for family in small_catalog.families:
        store.upload_tree(initial / family.value, contribution_key("0000_initial", family.value))
    return store


def write_round(round_dir: Path, catalog: Catalog, contributors, families=None, flat=False):
    """Lay out a round built by ``contributors`` in order, in FakeBinary's format."""
    for family in families or catalog.families:
        target = round_dir if flat else round_dir / family.value
        target.mkdir(parents=True, exist_ok=True)
        for name in catalog.names(family):
            filename = initial_name(name)
            lines = [f"root:{name}"]
            for seq, contributor in enumerate(contributors, start=1):
                filename = derive_output_name(filename, contributor, seq)
                lines.append(f"contrib:{filename}")
            (target / filename).write_text("\n".join(lines) + "\n")
