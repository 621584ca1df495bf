"""
Compatibility Shim

Older clients send the session id in the request body (`sessionId`) or in
the URL path; current clients send the `x-session-id` header. This module
picks exactly one source per request, by precedence

    header > URL path > body

and hands a single canonical selection to the session resolver. Fields
from two shapes are never mixed: the table number travels with the shape
that supplied the session id.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


class RequestShape(str, enum.Enum):
    """Where the session id of a request came from."""
    HEADER = "header"
    PATH = "path"
    BODY = "body"
    NONE = "none"

    @property
    def is_legacy(self) -> bool:
        return self in (RequestShape.PATH, RequestShape.BODY)


@dataclass(frozen=True)
class SessionSelection:
    session_id: Optional[str]
    shape: RequestShape
    table_number: Optional[str] = None


def _present(value: Optional[str]) -> bool:
    # Browsers serialize missing values as the literal string "undefined"
    return value is not None and value.strip() not in ("", "undefined")


def select_session(
    header_id: Optional[str] = None,
    path_id: Optional[str] = None,
    body_id: Optional[str] = None,
    *,
    header_table: Optional[str] = None,
    body_table: Optional[str] = None,
) -> SessionSelection:
    """
    Choose the session id source for one request.

    Args:
        header_id: Value of the x-session-id header
        path_id: Session id from the URL path
        body_id: `sessionId` from the JSON body
        header_table: Value of the x-table-number header (header shape only)
        body_table: `tableNumber` from the JSON body (body shape only)

    Returns:
        SessionSelection: chosen id, the shape it came from and the table
        number belonging to that same shape

    Example:
        >>> select_session(header_id="session-T5-1750269477313-ab12cd34e", body_id="old-1")
        SessionSelection(session_id='session-T5-...', shape=<RequestShape.HEADER: 'header'>, ...)
    """
    header_table = header_table if _present(header_table) else None
    body_table = body_table if _present(body_table) else None

    if _present(header_id):
        selection = SessionSelection(header_id, RequestShape.HEADER, header_table)
    elif _present(path_id):
        selection = SessionSelection(path_id, RequestShape.PATH, None)
    elif _present(body_id):
        selection = SessionSelection(body_id, RequestShape.BODY, body_table)
    else:
        # No id at all: the table context may still arrive either way
        selection = SessionSelection(None, RequestShape.NONE, header_table or body_table)

    if selection.shape.is_legacy:
        logger.info(f"Deprecated request shape '{selection.shape.value}' for session {selection.session_id}")
    return selection
