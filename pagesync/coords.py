"""Conversions between source (engine point) and canvas coordinates.

Two regimes exist. Fixed-page documents have one page size for every page
and are stacked with a constant gap. Paginated-flow documents use the page
boxes of a :class:`~pagesync.layout.PageLayout`.
"""

import math
from dataclasses import dataclass


@dataclass(frozen=True)
class BBox:
    min_x: float
    min_y: float
    max_x: float
    max_y: float

    @property
    def width(self):
        return self.max_x - self.min_x

    @property
    def height(self):
        return self.max_y - self.min_y

    @classmethod
    def coerce(cls, value):
        if isinstance(value, cls):
            return value
        if isinstance(value, dict):
            return cls(
                value["minX"], value["minY"], value["maxX"], value["maxY"]
            )
        min_x, min_y, max_x, max_y = value
        return cls(min_x, min_y, max_x, max_y)


class FixedPageMapper:
    def __init__(self, layout_settings):
        self.pdf_width = layout_settings.pdf_width
        self.pdf_height = layout_settings.pdf_height
        self.page_width = layout_settings.target_width
        self.page_height = layout_settings.page_height
        self.gap = layout_settings.page_gap
        self.scale_x = self.page_width / self.pdf_width
        self.scale_y = self.page_height / self.pdf_height

    @property
    def stride(self):
        return self.page_height + self.gap

    def to_canvas(self, page, x, y):
        return {
            "x": x * self.scale_x,
            "y": (page - 1) * self.stride + y * self.scale_y,
        }

    def to_source(self, canvas_x, canvas_y):
        page = math.floor(canvas_y / self.stride) + 1
        local_y = canvas_y - (page - 1) * self.stride
        return {
            "page": page,
            "x": canvas_x / self.scale_x,
            "y": local_y / self.scale_y,
        }


class FlowMapper:
    def __init__(self, layout, page_gap=20.0):
        self.layout = layout
        self.page_gap = page_gap

    def to_canvas(self, page, x, y):
        try:
            box = self.layout.box(page)
        except IndexError:
            return None
        return {"x": box.x + x, "y": box.y + y}

    def to_source(self, canvas_x, canvas_y):
        boxes = self.layout.boxes
        if not boxes:
            return None
        best = None
        best_dist = math.inf
        for i, box in enumerate(boxes):
            if not box.contains_y(canvas_y, self.page_gap):
                continue
            if box.contains_x(canvas_x):
                best = i
                break
            dist = box.distance_x(canvas_x)
            if dist < best_dist:
                best_dist = dist
                best = i
        if best is None:
            # below the last page
            best = len(boxes) - 1
        box = boxes[best]
        return {
            "page": best + 1,
            "x": canvas_x - box.x,
            "y": canvas_y - box.y,
        }


def classify_gesture(bbox):
    """Name the kind of mark a stroke with bounding box ``bbox`` looks like."""
    bbox = BBox.coerce(bbox)
    w = bbox.width
    h = bbox.height
    ratio = w / max(h, 1)
    if w < 20 and h < 20:
        return "dot"
    if ratio > 4:
        return "strikethrough"
    if ratio > 2:
        return "underline"
    if ratio < 0.3:
        return "vertical-line"
    if ratio < 0.5:
        return "bracket"
    return "circle"


def is_horizontal_gesture(width, height, min_width=50.0):
    return width > min_width and classify_gesture((0, 0, width, height)) in (
        "strikethrough",
        "underline",
    )


def _split_key(key):
    name, _, number = key.rpartition(":")
    return (name or None), int(number)


def find_nearby_lines(table, mapper, canvas_bbox, margin=15.0, x_slack=20.0):
    """Source lines near a canvas region, sorted by line number.

    Both corners are converted to source coordinates, and only the page of
    the top-left corner is searched. A region straddling two pages is
    matched against the first page only.
    """
    if table is None:
        return []
    bbox = BBox.coerce(canvas_bbox)
    top_left = mapper.to_source(bbox.min_x, bbox.min_y)
    bottom_right = mapper.to_source(bbox.max_x, bbox.max_y)
    if top_left is None or bottom_right is None:
        return []
    page = top_left["page"]
    width = bottom_right["x"] - top_left["x"]
    height = bottom_right["y"] - top_left["y"]
    use_x = is_horizontal_gesture(width, height)
    matches = []
    for key, entry in table.lines.items():
        if entry.page != page:
            continue
        if (
            entry.y < top_left["y"] - margin
            or entry.y > bottom_right["y"] + margin
        ):
            continue
        if use_x and (
            entry.x > bottom_right["x"] + x_slack
            or entry.x < top_left["x"] - x_slack
        ):
            continue
        filename, line = _split_key(key)
        match = {"line": line, "content": entry.content, "x": entry.x, "y": entry.y}
        if filename is not None:
            match["file"] = filename
        matches.append(match)
    matches.sort(key=lambda m: (m["line"], m.get("file", "")))
    return matches
