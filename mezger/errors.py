class MezgerError(Exception):
    """Base class for harvester errors."""


class AdapterFailure(MezgerError):
    """
    A source could not be scraped this run (network, timeout, parse).

    Scoped to one source: the client records it and the reconciliation
    pass carries that source's listings over unchanged.
    """

    def __init__(self, source: str, reason: str) -> None:
        super().__init__(f"[{source}] {reason}")
        self.source = source
        self.reason = reason


class MalformedRecord(MezgerError):
    """A RawRecord that cannot be keyed (missing source or link). Dropped, not fatal."""


class PersistenceFailure(MezgerError):
    """The collection document could not be read or written. Fatal for the run."""
