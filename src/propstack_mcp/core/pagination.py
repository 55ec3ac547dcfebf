"""Page-by-page accumulation over Propstack list endpoints.

Pages are fetched strictly in order: whether page N+1 is needed depends on
page N's size and the reported total. The cap is always finite.
"""

from __future__ import annotations

import logging
from typing import Union

from .clients.propstack import PropstackClient
from .models import Failure, PaginatedCollection, RequestDescriptor

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100
DEFAULT_MAX_ITEMS = 1000


async def paginate(
    client: PropstackClient,
    request: RequestDescriptor,
    page_size: int = DEFAULT_PAGE_SIZE,
    max_items: int = DEFAULT_MAX_ITEMS,
) -> Union[PaginatedCollection, Failure]:
    """Walk ``request`` page by page until the data, the total, or the cap runs out.

    Args:
        client: Propstack client used for every page.
        request: Template descriptor; ``page`` and ``per_page`` are added per page.
        page_size: Items requested per page. Constant across pages so page
            offsets stay aligned.
        max_items: Hard cap on accumulated items.

    Returns:
        PaginatedCollection with at most ``max_items`` items, or the Failure of
        the first page that failed. Items gathered before a failure are dropped.
    """
    if page_size <= 0:
        raise ValueError(f"page_size must be positive, got {page_size}")
    if max_items <= 0:
        raise ValueError(f"max_items must be positive, got {max_items}")

    items: list = []
    total_count = None
    page = 0
    more_available = False

    while True:
        page += 1
        outcome = await client.execute(request.with_params(page=page, per_page=page_size))
        if isinstance(outcome, Failure):
            logger.warning("Pagination of %s stopped at page %d: %s", request.path, page, outcome.kind.value)
            return outcome

        batch = outcome.items
        if outcome.total_count is not None:
            total_count = outcome.total_count

        room = max_items - len(items)
        items.extend(batch[:room])
        overflow = len(batch) > room

        if len(batch) < page_size:
            more_available = overflow
            break
        if total_count is not None and len(items) >= total_count:
            break
        if len(items) >= max_items:
            if total_count is not None:
                more_available = total_count > len(items)
            else:
                more_available = True
            break

    if more_available:
        logger.info(
            "Pagination of %s capped at %d items (%s reported)",
            request.path,
            max_items,
            total_count if total_count is not None else "unknown",
        )

    return PaginatedCollection(
        items=items,
        total_count=total_count,
        max_items=max_items,
        pages_fetched=page,
        truncated=more_available,
    )
