"""View model for the page thumbnail strip.

Both capture flows show the pages collected so far as a horizontal
strip.  The strip is pure presentation: it marks the selected page and
whether a remove affordance is shown, and leaves acting on a click to
the owner of the document.
"""

from __future__ import annotations

from typing import Iterable, List, Optional

from scanflow.models.capture import CapturedPage
from scanflow.models.schemas import StripEntry


def build_strip(
    pages: Iterable[CapturedPage],
    current_page: Optional[int] = None,
    show_remove: bool = False,
) -> List[StripEntry]:
    """Return one entry per page in page order; empty input gives an empty strip."""
    return [
        StripEntry(
            id=page.id,
            page_number=page.page_number,
            preview_uri=page.preview_uri,
            selected=current_page == page.page_number,
            removable=show_remove,
        )
        for page in sorted(pages, key=lambda p: p.page_number)
    ]
