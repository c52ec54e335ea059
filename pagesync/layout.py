import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path

from .models import PageBox
from .renderer import PAGE_INFO_NAME

logger = logging.getLogger(__name__)


@dataclass
class PageLayout:
    boxes: list = field(default_factory=list)
    widest: float = 0.0

    def box(self, page):
        if page < 1 or page > len(self.boxes):
            raise IndexError(f"page {page} is not in the layout")
        return self.boxes[page - 1]


def compute_flow_layout(page_infos, page_gap=20.0, tab_spacing=24.0):
    """Lay out paginated-flow pages on the canvas.

    Ungrouped pages are stacked and centered one by one. Consecutive pages
    sharing a ``group`` sit side by side, separated by ``tab_spacing``, and
    the row is centered as a unit.
    """
    boxes = []
    # (start index, end index, total width) for every group row
    rows = []
    top = 0.0
    widest = 0.0
    i = 0
    while i < len(page_infos):
        info = page_infos[i]
        group = info.get("group")
        if not group:
            boxes.append(PageBox(0.0, top, info["width"], info["height"]))
            top += info["height"] + page_gap
            widest = max(widest, info["width"])
            i += 1
            continue
        start = i
        left = 0.0
        tallest = 0.0
        while i < len(page_infos) and page_infos[i].get("group") == group:
            gp = page_infos[i]
            boxes.append(
                PageBox(
                    left,
                    top,
                    gp["width"],
                    gp["height"],
                    group,
                    gp.get("groupIndex", i - start),
                )
            )
            left += gp["width"] + tab_spacing
            tallest = max(tallest, gp["height"])
            i += 1
        row_width = left - tab_spacing
        rows.append((start, i, row_width))
        widest = max(widest, row_width)
        top += tallest + page_gap
    for box in boxes:
        if box.group is None:
            box.x = (widest - box.width) / 2
    for start, end, row_width in rows:
        offset = (widest - row_width) / 2
        for box in boxes[start:end]:
            box.x += offset
    return PageLayout(boxes, widest)


class LayoutCache:
    """Flow layouts per document, recomputed when page-info.json changes."""

    def __init__(self, page_gap=20.0, tab_spacing=24.0):
        self.page_gap = page_gap
        self.tab_spacing = tab_spacing
        self._entries = {}
        self._lock = threading.Lock()

    def get(self, document):
        path = Path(document.output_dir) / PAGE_INFO_NAME
        try:
            mtime = path.stat().st_mtime
        except FileNotFoundError:
            return None
        with self._lock:
            cached = self._entries.get(document.name)
        if cached is not None and cached[0] == mtime:
            return cached[1]
        try:
            page_infos = json.loads(path.read_text())
        except ValueError as e:
            logger.warning("could not parse %s: %s", path, e)
            return None
        layout = compute_flow_layout(
            page_infos, self.page_gap, self.tab_spacing
        )
        with self._lock:
            self._entries[document.name] = (mtime, layout)
        return layout
