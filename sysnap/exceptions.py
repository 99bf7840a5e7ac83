class SnapshotError(Exception):
    pass


class OutputError(SnapshotError):
    """The snapshot artifact could not be created, written or flushed."""


class OverwriteDeclined(SnapshotError):
    pass
