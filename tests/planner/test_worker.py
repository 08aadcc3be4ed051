import time
from concurrent.futures import CancelledError

import numpy as np
import pytest

from graph import GraphConfig
from occupancy import PinholeCamera, Pose
from planner import (
    BuildMotionsRequest,
    BuildPathRequest,
    CustomRequest,
    EmptyGraphError,
    GrowGraphRequest,
    InvalidRequestError,
    NopRequest,
    Operation,
    PlannerConfig,
    PlannerWorker,
    RaycastRequest,
    SolveTSPRequest,
    TourBudget,
    ViewpointPlanner,
    WorkerState,
)

TIMEOUT = 10.0


def _planner(volume, seed=21):
    graph = GraphConfig(region_min=(0.0, 0.0, 0.0), region_max=(8.0, 8.0, 3.0),
                        raycast_stride=1)
    return ViewpointPlanner(volume, PinholeCamera.create_simple(9, 7, 4.0),
                            PlannerConfig(graph=graph, seed=seed, worker_queue_size=4))


def _wait_for_state(worker, state, timeout=TIMEOUT):
    deadline = time.monotonic() + timeout
    while worker.state is not state:
        if time.monotonic() > deadline:
            raise AssertionError(f"worker 未进入 {state}, 当前 {worker.state}")
        time.sleep(0.01)


@pytest.fixture
def worker(block_volume):
    w = PlannerWorker(_planner(block_volume))
    w.start()
    yield w
    w.stop(timeout=TIMEOUT)


def test_full_pipeline(worker):
    grown = []
    worker.add_listener(Operation.GROW_GRAPH,
                        lambda rid, op, stats: grown.append((rid, op, stats.n_added)))
    f_grow = worker.submit(GrowGraphRequest(count=6))
    f_motions = worker.submit(BuildMotionsRequest())
    f_path = worker.submit(BuildPathRequest(budget=TourBudget(max_cost=30.0)))
    f_tsp = worker.submit(SolveTSPRequest())
    assert f_grow.result(TIMEOUT).n_added == 6
    f_motions.result(TIMEOUT)
    path = f_path.result(TIMEOUT)
    solved = f_tsp.result(TIMEOUT)
    assert grown == [(f_grow.request_id, Operation.GROW_GRAPH, 6)]
    assert f_grow.operation is Operation.GROW_GRAPH
    assert [sorted(b) for b in solved.branches] == [sorted(b) for b in path.branches]
    assert worker.planner.path is solved
    assert worker.wait_idle(TIMEOUT)


def test_result_store_and_state(worker):
    future = worker.submit(RaycastRequest(pose=Pose.look_at([6.0, 6.0, 1.0], [11.0, 11.0, 1.0])))
    result = future.result(TIMEOUT)
    _wait_for_state(worker, WorkerState.FINISHED)
    assert worker.operation is Operation.RAYCAST
    rid, stored = worker.peek_result(Operation.RAYCAST)
    assert rid == future.request_id
    assert stored is result
    taken = worker.take_result(Operation.RAYCAST)
    assert taken[0] == rid and taken[1] is result
    assert worker.state is WorkerState.IDLE
    assert worker.take_result(Operation.RAYCAST) is None


def test_failed_request_reports_error(worker):
    future = worker.submit(BuildPathRequest())
    with pytest.raises(EmptyGraphError):
        future.result(TIMEOUT)
    _wait_for_state(worker, WorkerState.IDLE)
    # 失败不影响后续请求
    assert worker.submit(NopRequest()).result(TIMEOUT) is None


def test_custom_request(worker):
    assert worker.run_custom(lambda p: p.graph.n_nodes, timeout=TIMEOUT) == 0
    assert worker.submit(CustomRequest(lambda p: "ok")).result(TIMEOUT) == "ok"


def test_unknown_request_rejected(worker):
    with pytest.raises(InvalidRequestError):
        worker.submit(object())


def test_queue_overflow_drops_oldest(block_volume):
    w = PlannerWorker(_planner(block_volume), queue_size=2)
    futures = [w.submit(NopRequest()) for _ in range(3)]
    assert futures[0].cancelled()
    assert w.n_pending == 2
    assert [f.request_id for f in futures] == [1, 2, 3]
    w.stop()
    assert all(f.cancelled() for f in futures)
    with pytest.raises(InvalidRequestError):
        w.submit(NopRequest())


def test_cancel_pending_request(block_volume):
    w = PlannerWorker(_planner(block_volume))
    first = w.submit(NopRequest())
    second = w.submit(NopRequest())
    assert w.cancel(second.request_id)
    assert second.cancelled()
    assert not w.cancel(999)
    w.start()
    assert first.result(TIMEOUT) is None
    with pytest.raises(CancelledError):
        second.result(TIMEOUT)
    w.stop(timeout=TIMEOUT)
    assert w.state is WorkerState.STOPPED
    assert not w.is_alive()


def test_pause_while_idle_holds_queue(worker):
    worker.pause()
    assert worker.state is WorkerState.PAUSED
    future = worker.submit(NopRequest())
    time.sleep(0.2)
    assert not future.done()
    assert worker.n_pending == 1
    worker.resume()
    assert future.result(TIMEOUT) is None


def test_pause_keeps_finished_until_result_taken(worker):
    future = worker.submit(NopRequest())
    assert future.result(TIMEOUT) is None
    _wait_for_state(worker, WorkerState.FINISHED)
    worker.pause()
    assert worker.state is WorkerState.FINISHED
    assert worker.operation is Operation.NOP
    assert worker.take_result(Operation.NOP)[0] == future.request_id
    assert worker.state is WorkerState.PAUSED
    held = worker.submit(NopRequest())
    time.sleep(0.2)
    assert not held.done()
    worker.resume()
    assert held.result(TIMEOUT) is None
    _wait_for_state(worker, WorkerState.FINISHED)


def test_pause_mid_operation_is_transparent(block_volume):
    reference = _planner(block_volume, seed=33)
    reference.grow_graph(5)

    w = PlannerWorker(_planner(block_volume, seed=33))
    w.start()
    try:
        def grow_with_pause(planner):
            w.pause()
            return planner.grow_graph(5, should_stop=w.checkpoint)

        future = w.submit(CustomRequest(grow_with_pause))
        _wait_for_state(w, WorkerState.PAUSED)
        assert not future.done()
        w.resume()
        stats = future.result(TIMEOUT)
    finally:
        w.stop(timeout=TIMEOUT)
    assert stats.n_added == 5
    assert not stats.cancelled
    np.testing.assert_allclose(w.planner.graph.positions(), reference.graph.positions())


def test_cancel_running_operation(block_volume):
    w = PlannerWorker(_planner(block_volume))
    w.start()
    try:
        def grow_with_pause(planner):
            w.pause()
            return planner.grow_graph(50, should_stop=w.checkpoint)

        future = w.submit(CustomRequest(grow_with_pause))
        _wait_for_state(w, WorkerState.PAUSED)
        assert w.cancel()
        stats = future.result(TIMEOUT)
        assert stats.cancelled
        assert stats.n_added == 0
        w.resume()
        # 取消标志不会延续到下一个请求
        grow = w.submit(GrowGraphRequest(count=2)).result(TIMEOUT)
        assert grow.n_added == 2
        assert not grow.cancelled
    finally:
        w.stop(timeout=TIMEOUT)


def test_stop_is_idempotent(block_volume):
    w = PlannerWorker(_planner(block_volume))
    w.start()
    w.stop(timeout=TIMEOUT)
    w.stop(timeout=TIMEOUT)
    assert w.state is WorkerState.STOPPED
    assert not w.cancel()
