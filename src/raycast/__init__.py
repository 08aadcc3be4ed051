"""raycast package: 射线投射与信息聚合."""

from .models import (
    RaycastMode,
    VoxelWrapper,
    VoxelWithInformationSet,
    PixelWindow,
    RayHit,
    RaycastResult,
)
from .information import InformationAggregator
from .raycaster import Raycaster

__all__ = [
	"RaycastMode",
	"VoxelWrapper",
	"VoxelWithInformationSet",
	"PixelWindow",
	"RayHit",
	"RaycastResult",
	"InformationAggregator",
	"Raycaster",
]
