"""Exception taxonomy for the ceremony tooling.

Every error carries an optional ``remedy`` string that the CLI prints after
the message, so an operator always knows what to retry or clean up.
"""


class CeremonyError(Exception):
    remedy: str = ""

    def __init__(self, message: str, remedy: str | None = None):
        super().__init__(message)
        if remedy is not None:
            self.remedy = remedy


class ConfigurationError(CeremonyError):
    """A required external tool, binary or credential is missing."""


class TransferFailed(CeremonyError):
    """A network transfer exhausted its retries."""


class CapabilityExpired(CeremonyError):
    """A signed URL was rejected by the backend because it expired."""

    remedy = "Ask the coordinator to re-issue the URLs file for this contribution."


class UnrecognizedArtifactName(CeremonyError):
    """A file name does not match the ceremony naming grammar."""


class MalformedPredecessorId(CeremonyError):
    """The predecessor contribution id has no numeric sequence prefix."""


class InvalidContributor(CeremonyError):
    """A contributor label contains characters the naming grammar cannot carry."""


class ContributionNotProduced(CeremonyError):
    """The setup binary exited without writing the expected output file."""


class EmptyRound(CeremonyError):
    """No circuit was processed for a requested family."""


class MissingPredecessorState(CeremonyError):
    """The predecessor contribution has no commitment files to build on."""


class DuplicateContributionId(CeremonyError):
    """The contribution id was already issued against another predecessor."""


class SetupCommandFailed(CeremonyError):
    """An external setup or prover command exited non-zero."""

    def __init__(self, message: str, returncode: int = 1, output: str = "", remedy: str | None = None):
        super().__init__(message, remedy)
        self.returncode = returncode
        self.output = output
