from collections.abc import Sequence


def list_response(items: Sequence, limit: int, offset: int) -> dict:
    """Envelope a page of results; ``count`` is the size of this page."""
    return {"items": list(items), "count": len(items), "limit": limit, "offset": offset}
