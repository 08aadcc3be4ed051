import numpy as np
import pytest

from occupancy import PinholeCamera, Pose, compute_information_weight
from raycast import (
    InformationAggregator,
    PixelWindow,
    RaycastMode,
    Raycaster,
    VoxelWrapper,
)

W_09 = compute_information_weight(0.9, 1)


def test_single_ray_hits_nearest_voxel(ray_volume, ray_pose, pixel_camera):
    caster = Raycaster(ray_volume, pixel_camera)
    result = caster.raycast(ray_pose)
    assert result.n_rays == 1
    assert result.n_hits == 1
    hit = result.hits[0]
    assert hit.voxel.key == (2, 0, 0)
    assert hit.pixel == (0.0, 0.0)
    assert hit.distance == pytest.approx(2.0)
    assert result.total_information == pytest.approx(W_09)
    assert W_09 == pytest.approx(0.2345, abs=1e-3)
    assert not result.cancelled


def test_voxel_center_mode_only_sees_front_voxel(ray_volume, ray_pose, pixel_camera):
    caster = Raycaster(ray_volume, pixel_camera)
    result = caster.raycast(ray_pose, mode=RaycastMode.INFORMATION_VOXEL_CENTER)
    assert [h.voxel.key for h in result.hits] == [(2, 0, 0)]
    assert result.mode is RaycastMode.INFORMATION_VOXEL_CENTER
    np.testing.assert_allclose(result.hits[0].pixel, [0.5, 0.5])


def test_mode_parsing():
    assert RaycastMode.parse("default") is RaycastMode.DEFAULT
    assert RaycastMode.parse("INFORMATION_VOXEL_CENTER") is RaycastMode.INFORMATION_VOXEL_CENTER
    with pytest.raises(KeyError):
        RaycastMode.parse("bogus")


def test_stride_and_window_limit_rays(ray_volume, ray_pose, small_camera):
    caster = Raycaster(ray_volume, small_camera)
    assert caster.raycast(ray_pose, stride=1).n_rays == 48
    assert caster.raycast(ray_pose, stride=2).n_rays == 12
    window = PixelWindow(2, 6, 1, 5)
    result = caster.raycast(ray_pose, window=window)
    assert result.n_rays == 16
    assert result.window == window
    assert all(window.contains(*h.pixel) for h in result.hits)
    assert caster.n_rays_cast == 48 + 12 + 16


def test_window_is_clipped(small_camera):
    w = PixelWindow(-3, 20, 2, 4).clipped(small_camera)
    assert w.to_tuple() == (0, 8, 2, 4)
    assert PixelWindow(5, 5, 0, 6).is_empty
    c = PixelWindow.centered(small_camera, 4, 2)
    assert c.to_tuple() == (2, 6, 2, 4)
    assert c.n_pixels == 8


def test_every_hit_is_informative(box_volume, small_camera):
    caster = Raycaster(box_volume, small_camera)
    pose = Pose.look_at([3.0, 3.0, 3.0], [10.0, 3.0, 3.0])
    result = caster.raycast(pose)
    assert result.n_hits == result.n_rays
    for hit in result.hits:
        cell = hit.voxel.resolve(box_volume)
        assert cell is not None
        assert cell.is_informative(box_volume.config.occupancy_threshold)
        assert hit.voxel.key[0] == 5


def test_rays_leaving_map_produce_no_hits(ray_volume, pixel_camera):
    caster = Raycaster(ray_volume, pixel_camera)
    pose = Pose.look_at([0.0, 0.5, 0.5], [-10.0, 0.5, 0.5])
    result = caster.raycast(pose)
    assert result.n_rays == 1
    assert result.n_hits == 0
    assert result.total_information == 0.0


def test_max_range(ray_volume, ray_pose, pixel_camera):
    caster = Raycaster(ray_volume, pixel_camera, max_range=1.0)
    assert caster.raycast(ray_pose).n_hits == 0


def test_cancel_between_rows(ray_volume, ray_pose, small_camera):
    caster = Raycaster(ray_volume, small_camera)
    calls = []

    def stop_after_two_rows():
        calls.append(1)
        return len(calls) > 2

    result = caster.raycast(ray_pose, should_stop=stop_after_two_rows)
    assert result.cancelled
    assert result.n_rays == 2 * small_camera.width


def test_current_information_mode_discounts_claimed(ray_volume, ray_pose, pixel_camera):
    aggregator = InformationAggregator()
    caster = Raycaster(ray_volume, pixel_camera, aggregator=aggregator)
    first = caster.raycast(ray_pose, mode=RaycastMode.WITH_CURRENT_INFORMATION)
    assert first.total_information == pytest.approx(W_09)
    aggregator.claim(first.voxel_set)
    second = caster.raycast(ray_pose, mode=RaycastMode.WITH_CURRENT_INFORMATION)
    assert second.total_information == pytest.approx(0.0)
    # DEFAULT 模式不受累计状态影响
    assert caster.raycast(ray_pose).total_information == pytest.approx(W_09)


def test_saturated_voxel_carries_no_information(pixel_camera, ray_pose):
    from occupancy import OccupancyVolume, VolumeConfig

    volume = OccupancyVolume(VolumeConfig(resolution=1.0))
    volume.insert_cell((2, 0, 0), occupancy=1.0, observation_count=5)
    result = Raycaster(volume, pixel_camera).raycast(ray_pose)
    assert result.n_hits == 1
    assert result.total_information == 0.0


def test_result_views(box_volume, small_camera):
    pose = Pose.look_at([3.0, 3.0, 3.0], [10.0, 3.0, 3.0])
    result = Raycaster(box_volume, small_camera).raycast(pose)
    depths = result.depths()
    coords = result.screen_coordinates()
    normals = result.normals()
    assert set(depths) == set(coords) == set(normals) == set(result.voxel_set)
    for voxel, d in depths.items():
        assert d == pytest.approx(min(h.distance for h in result.hits if h.voxel == voxel))
    for n in normals.values():
        np.testing.assert_allclose(n, [-1.0, 0.0, 0.0])


def test_invalid_camera_rejected(ray_volume):
    with pytest.raises(ValueError):
        Raycaster(ray_volume, PinholeCamera.create_simple(0, 0, 1.0))


def test_voxel_wrapper_identity(ray_volume):
    a = VoxelWrapper(key=(2, 0, 0), depth=16)
    b = VoxelWrapper.from_list(a.to_list())
    assert a == b and hash(a) == hash(b)
    assert a.resolve(ray_volume).occupancy == pytest.approx(0.9)


@pytest.mark.parametrize("mode", list(RaycastMode))
def test_repeated_raycast_is_stateless(box_volume, small_camera, mode):
    pose = Pose.look_at([3.0, 3.0, 3.0], [10.0, 3.0, 3.0])
    aggregator = InformationAggregator()
    caster = Raycaster(box_volume, small_camera, aggregator=aggregator)
    seen = caster.raycast(pose).voxel_set
    aggregator.claim(seen)
    n_claimed = aggregator.n_claimed
    assert n_claimed > 0

    r1 = caster.raycast(pose, mode=mode)
    r2 = caster.raycast(pose, mode=mode)
    assert r1.voxel_set == r2.voxel_set
    assert r1.total_information == pytest.approx(r2.total_information)
    assert [h.voxel for h in r1.hits] == [h.voxel for h in r2.hits]
    # 投射只读累计状态
    assert aggregator.n_claimed == n_claimed
    if mode is RaycastMode.WITH_CURRENT_INFORMATION:
        assert r1.total_information == pytest.approx(0.0)
