from pcse import exceptions as exc


class PhenologyError(exc.PCSEError):
    """Fatal error in the phenological phase state machine."""


class PhaseNotFoundError(PhenologyError):
    """A phase or stage name could not be resolved in the phase list."""
