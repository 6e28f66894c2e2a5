from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from .catalog import FAMILY_ORDER, Family
from .chain import circuit_identity, next_id
from .errors import UnrecognizedArtifactName

# --- Transfer grants ---

class TransferGrant(BaseModel):
    """A signed URL scoped to one object key."""

    path: str = Field(..., examples=["ceremony/contributions/0000_initial/v2/v2_inclusion_32_1_0000.ph2"])
    mode: Literal["read", "write"]
    url: str
    expires_at: Optional[datetime] = None

    @property
    def filename(self) -> str:
        return self.path.rsplit("/", 1)[-1]


class FamilyGrants(BaseModel):
    version: Family
    download: Dict[str, str] = Field(default_factory=dict)
    upload: Dict[str, str] = Field(default_factory=dict)
    expires_at: Optional[datetime] = None

    @classmethod
    def from_grants(cls, family: Family, grants: List[TransferGrant]) -> "FamilyGrants":
        expiries = [g.expires_at for g in grants if g.expires_at]
        return cls(
            version=family,
            download={g.filename: g.url for g in grants if g.mode == "read"},
            upload={g.filename: g.url for g in grants if g.mode == "write"},
            expires_at=min(expiries) if expiries else None,
        )


# --- Exchange manifest ---

class ExchangeManifest(BaseModel):
    """The URLs file handed from coordinator to contributor.

    Two wire forms are accepted: a single family with ``download``/``upload``
    at the top level, or several families under ``versions``.
    """

    contributor: str
    contribution_id: str
    previous_contribution: str
    version: Optional[Family] = None
    download: Optional[Dict[str, str]] = None
    upload: Optional[Dict[str, str]] = None
    versions: Optional[List[FamilyGrants]] = None
    expires_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _check(self):
        expected = next_id(self.previous_contribution, self.contributor)
        if self.contribution_id != expected:
            raise ValueError(
                f"contribution_id {self.contribution_id!r} does not follow "
                f"{self.previous_contribution!r} (expected {expected!r})"
            )
        single = self.download is not None or self.upload is not None
        if single == (self.versions is not None):
            raise ValueError("manifest needs either download/upload or versions, not both")
        return self

    @classmethod
    def build(
        cls,
        contributor: str,
        previous_contribution: str,
        families: List[FamilyGrants],
        expires_at: Optional[datetime] = None,
    ) -> "ExchangeManifest":
        base = dict(
            contributor=contributor,
            contribution_id=next_id(previous_contribution, contributor),
            previous_contribution=previous_contribution,
            expires_at=expires_at,
        )
        if len(families) == 1:
            only = families[0]
            return cls(version=only.version, download=only.download, upload=only.upload, **base)
        return cls(versions=families, **base)

    def families(self) -> List[FamilyGrants]:
        """Normalized per-family view over both wire forms."""
        if self.versions is not None:
            return sorted(self.versions, key=lambda g: FAMILY_ORDER.index(g.version))
        family = self.version or self._infer_family()
        return [
            FamilyGrants(
                version=family,
                download=self.download or {},
                upload=self.upload or {},
                expires_at=self.expires_at,
            )
        ]

    def _infer_family(self) -> Family:
        # Older single-family files carry no version field
        found = {circuit_identity(name).family for name in (self.download or {}) if name.endswith(".ph2")}
        if len(found) != 1:
            raise UnrecognizedArtifactName(
                "cannot infer the family of an unversioned URLs file",
                remedy="Ask the coordinator for a URLs file with a version field.",
            )
        return found.pop()

    def select(self, families=None) -> List[FamilyGrants]:
        if families is None:
            return self.families()
        wanted = {Family(f) for f in families}
        return [g for g in self.families() if g.version in wanted]

    def dump(self) -> str:
        return self.model_dump_json(exclude_none=True, indent=2)
