"""Lookups and coordinate conversions for built documents.

These read whatever lookup table and page layout the pipeline produced
last and never modify them.
"""

from .coords import FixedPageMapper, FlowMapper, find_nearby_lines
from .layout import LayoutCache
from .synctex import LookupStore


class SyncQueries:
    def __init__(self, layout_settings, lookups=None, layouts=None):
        self.layout_settings = layout_settings
        self.lookups = lookups if lookups is not None else LookupStore()
        if layouts is None:
            layouts = LayoutCache(
                layout_settings.page_gap, layout_settings.tab_spacing
            )
        self.layouts = layouts
        self._fixed = FixedPageMapper(layout_settings)

    def mapper(self, document):
        """Mapper for the document's regime, or None without a layout yet."""
        if document.format == "html":
            layout = self.layouts.get(document)
            if layout is None:
                return None
            return FlowMapper(layout, self.layout_settings.page_gap)
        return self._fixed

    def get_lookup(self, document, line_key):
        table = self.lookups.get(document)
        if table is None:
            return None
        entry = table.get(line_key)
        if entry is None:
            return None
        return entry.to_dict()

    def map_source_to_canvas(self, document, page, x, y):
        mapper = self.mapper(document)
        if mapper is None:
            return None
        return mapper.to_canvas(page, x, y)

    def map_canvas_to_source(self, document, x, y):
        mapper = self.mapper(document)
        if mapper is None:
            return None
        return mapper.to_source(x, y)

    def find_nearby_lines(self, document, canvas_bbox):
        mapper = self.mapper(document)
        if mapper is None:
            return []
        return find_nearby_lines(
            self.lookups.get(document),
            mapper,
            canvas_bbox,
            margin=self.layout_settings.nearby_margin,
        )
