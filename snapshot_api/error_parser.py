# snapshot_api/error_parser.py
from sqlalchemy.exc import DisconnectionError, OperationalError

CONNECTION_MARKERS = (
    "econnreset",
    "connection",
    "server has gone away",
    "lost connection",
    "timeout expired",
)


def is_connection_error(error: BaseException) -> bool:
    """
    Tells whether an error is a transient infrastructure failure that the
    next poll is likely to get past.
    """
    if isinstance(error, (ConnectionError, DisconnectionError)):
        return True
    if isinstance(error, OperationalError) and error.connection_invalidated:
        return True
    message = str(error).lower()
    return any(marker in message for marker in CONNECTION_MARKERS)


def summarize_error(error: BaseException) -> str:
    """One-line description of an error for the backup ledger."""
    message = str(error).strip()
    if not message:
        return f"{type(error).__name__}: Unknown error"
    first_line = message.splitlines()[0]
    return first_line if len(first_line) <= 500 else first_line[:497] + "..."
