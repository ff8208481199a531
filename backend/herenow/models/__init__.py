from herenow.models.page_event import PageEvent

__all__ = [
    "PageEvent",
]
