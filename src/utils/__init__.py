"""utils package."""

from .seed import make_seed, make_rng
from .timing import Timer

__all__ = [
    "make_seed",
    "make_rng",
    "Timer",
]
