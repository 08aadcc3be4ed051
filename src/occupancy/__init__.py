"""occupancy package: 只读占据体与相机契约."""

from .models import (
    VoxelCell,
    VoxelKey,
    VolumeConfig,
    CellHit,
    binary_entropy,
    compute_information_weight,
)
from .volume import OccupancyVolume, make_box_volume
from .camera import Pose, PinholeCamera

__all__ = [
	"VoxelCell",
	"VoxelKey",
	"VolumeConfig",
	"CellHit",
	"binary_entropy",
	"compute_information_weight",
	"OccupancyVolume",
	"make_box_volume",
	"Pose",
	"PinholeCamera",
]
