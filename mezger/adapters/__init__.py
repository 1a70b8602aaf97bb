from mezger.adapters.base import BaseAdapter
from mezger.adapters.html import BringATrailerAdapter, HtmlAdapter, PelicanPartsAdapter
from mezger.adapters.rest import RestAdapter

# Registry: "adapter" value in sites.json -> class
# Add new adapter classes here and register them with their name.
ADAPTER_REGISTRY: dict[str, type[BaseAdapter]] = {
    RestAdapter.name:          RestAdapter,
    HtmlAdapter.name:          HtmlAdapter,
    BringATrailerAdapter.name: BringATrailerAdapter,
    PelicanPartsAdapter.name:  PelicanPartsAdapter,
}

__all__ = [
    "BaseAdapter",
    "RestAdapter",
    "HtmlAdapter",
    "BringATrailerAdapter",
    "PelicanPartsAdapter",
    "ADAPTER_REGISTRY",
]
