"""treecheckout: check out content-addressed commits into directory trees."""

__version__ = "0.1.0"

from treecheckout.checkout import Cancellable, CheckoutStats, checkout_at
from treecheckout.devino import DevInoCache
from treecheckout.errors import CheckoutError, ErrorCode
from treecheckout.filters import EntryStat, FilterResult, PathFilter
from treecheckout.objects import Repository
from treecheckout.options import CheckoutMode, CheckoutOptions, OverwriteMode
from treecheckout.types import Checksum

__all__ = [
    "__version__",
    "Cancellable",
    "CheckoutError",
    "CheckoutMode",
    "CheckoutOptions",
    "CheckoutStats",
    "Checksum",
    "DevInoCache",
    "EntryStat",
    "ErrorCode",
    "FilterResult",
    "OverwriteMode",
    "PathFilter",
    "Repository",
    "checkout_at",
]
