from datetime import datetime, timezone

from sqlalchemy import (
    create_engine,
    Column,
    Integer,
    String,
    DateTime,
    Index,
    Text,
)
from sqlalchemy.orm import declarative_base, sessionmaker

from .errors import DuplicateContributionId

Base = declarative_base()


def _now():
    return datetime.now(timezone.utc)


class IssuedRound(Base):
    """One URLs file handed to a contributor."""

    __tablename__ = "issued_rounds"
    id = Column(Integer, primary_key=True)
    contribution_id = Column(String, nullable=False, index=True)
    contributor = Column(String, nullable=False)
    previous_contribution = Column(String, nullable=False)
    families = Column(String, nullable=False)
    manifest_path = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    issued_at = Column(DateTime(timezone=True), nullable=False, default=_now)


class VerificationAudit(Base):
    __tablename__ = "verification_audit"
    id = Column(Integer, primary_key=True)
    contribution_id = Column(String, nullable=False, index=True)
    family = Column(String, nullable=False)
    circuit = Column(String, nullable=False)
    outcome = Column(String, nullable=False)
    detail = Column(Text, nullable=True)
    checked_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        Index("idx_audit_contribution_circuit", "contribution_id", "circuit"),
    )


def make_engine(url: str):
    # SQLAlchemy expects the "postgresql" scheme; handle old "postgres" URLs too
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return create_engine(
        url,
        connect_args={"check_same_thread": False} if url.startswith("sqlite") else {},
    )


class Ledger:
    """Coordinator-side record of issued rounds and verification outcomes."""

    def __init__(self, url: str):
        self.engine = make_engine(url)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        Base.metadata.create_all(bind=self.engine)

    def record_issue(
        self,
        contribution_id: str,
        contributor: str,
        previous_contribution: str,
        families,
        manifest_path=None,
        expires_at=None,
    ) -> IssuedRound:
        """Record an issuance. Re-issuing an id is only allowed against the same predecessor."""
        db = self.SessionLocal()
        try:
            clash = (
                db.query(IssuedRound)
                .filter(IssuedRound.contribution_id == contribution_id)
                .filter(IssuedRound.previous_contribution != previous_contribution)
                .first()
            )
            if clash:
                raise DuplicateContributionId(
                    f"{contribution_id} was already issued on top of {clash.previous_contribution}",
                    remedy="Pick a different contributor label or build on the same predecessor.",
                )
            row = IssuedRound(
                contribution_id=contribution_id,
                contributor=contributor,
                previous_contribution=previous_contribution,
                families=",".join(str(getattr(f, "value", f)) for f in families),
                manifest_path=str(manifest_path) if manifest_path else None,
                expires_at=expires_at,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return row
        finally:
            db.close()

    def issued(self, contribution_id: str | None = None) -> list[IssuedRound]:
        db = self.SessionLocal()
        try:
            q = db.query(IssuedRound)
            if contribution_id:
                q = q.filter_by(contribution_id=contribution_id)
            return q.order_by(IssuedRound.issued_at, IssuedRound.id).all()
        finally:
            db.close()

    def record_verdict(self, contribution_id: str, outcomes) -> int:
        """Store ``(family, circuit, outcome, detail)`` rows for a verification pass."""
        db = self.SessionLocal()
        try:
            count = 0
            for family, circuit, outcome, detail in outcomes:
                db.add(
                    VerificationAudit(
                        contribution_id=contribution_id,
                        family=str(getattr(family, "value", family)),
                        circuit=circuit,
                        outcome=outcome,
                        detail=detail,
                    )
                )
                count += 1
            db.commit()
            return count
        finally:
            db.close()

    def audits(self, contribution_id: str) -> list[VerificationAudit]:
        db = self.SessionLocal()
        try:
            return (
                db.query(VerificationAudit)
                .filter_by(contribution_id=contribution_id)
                .order_by(VerificationAudit.id)
                .all()
            )
        finally:
            db.close()
