"""DOM snapshots, target resolution and in-page actions."""

from pagemodel.actions import ActionExecutor
from pagemodel.document import REF_ATTR, PageDocument
from pagemodel.model import PageSnapshot, build_snapshot, find_element
from pagemodel.surface import PageSurface, StaticPage

__all__ = [
    "ActionExecutor",
    "PageDocument",
    "PageSnapshot",
    "PageSurface",
    "REF_ATTR",
    "StaticPage",
    "build_snapshot",
    "find_element",
]
