"""
planner/worker.py - 后台规划线程

PlannerWorker 是唯一执行规划操作的后台线程，一次只运行一个操作。

命令通道：
- 每个请求是一个不可变 dataclass（一种 Operation 一个类型，携带自身参数）
- submit() 把请求放入有界 FIFO 队列，并返回该请求专属的 Future；
  队列满时丢弃最早的待处理请求（其 Future 被取消）
- 结果在规划器锁下发布，然后依次通知该 Operation 的监听者
  (request_id, operation, result)，最后兑现 Future

状态机：
    IDLE ──submit──▶ RUNNING(op) ──完成──▶ FINISHED(op) ──take_result──▶ IDLE
                         │  ▲
                   pause │  │ resume          （只在安全点挂起）
                         ▼  │
                        PAUSED

暂停与取消都是协作式的：操作在安全点轮询 Checkpoint，暂停时阻塞在
安全点，取消时尽快返回结构一致的部分结果（cancelled=True）。
"""

import enum
import itertools
import logging
import threading
from collections import defaultdict, deque
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Deque, Dict, List, Optional, Tuple

import numpy as np

from occupancy.camera import Pose
from raycast.models import PixelWindow, RaycastMode
from .models import InvalidRequestError, PlannerError, TourBudget
from .viewpoint_planner import ViewpointPlanner

logger = logging.getLogger(__name__)


class Operation(enum.Enum):
    NOP = "nop"
    GROW_GRAPH = "grow_graph"
    BUILD_MOTIONS = "build_motions"
    BUILD_PATH = "build_path"
    SOLVE_TSP = "solve_tsp"
    RAYCAST = "raycast"
    DUMP_MESH = "dump_mesh"
    MAKE_SPARSE_MATCHABLE = "make_sparse_matchable"
    MATCH_POSES = "match_poses"
    CUSTOM_REQUEST = "custom_request"


class WorkerState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    FINISHED = "finished"
    STOPPED = "stopped"


# ─── 请求 ────────────────────────────────────────────────

@dataclass(frozen=True)
class NopRequest:
    operation: ClassVar[Operation] = Operation.NOP


@dataclass(frozen=True)
class GrowGraphRequest:
    count: int
    region: Optional[Tuple[Tuple[float, float, float], Tuple[float, float, float]]] = None
    operation: ClassVar[Operation] = Operation.GROW_GRAPH


@dataclass(frozen=True)
class BuildMotionsRequest:
    operation: ClassVar[Operation] = Operation.BUILD_MOTIONS


@dataclass(frozen=True)
class BuildPathRequest:
    budget: Optional[TourBudget] = None
    n_branches: Optional[int] = None
    start: Optional[int] = None
    component: Optional[int] = None
    operation: ClassVar[Operation] = Operation.BUILD_PATH


@dataclass(frozen=True)
class SolveTSPRequest:
    operation: ClassVar[Operation] = Operation.SOLVE_TSP


@dataclass(frozen=True, eq=False)
class RaycastRequest:
    pose: Pose
    window: Optional[PixelWindow] = None
    mode: Optional[RaycastMode] = None
    stride: Optional[int] = None
    operation: ClassVar[Operation] = Operation.RAYCAST


@dataclass(frozen=True, eq=False)
class DumpMeshRequest:
    pose: Pose
    filepath: Optional[str] = None
    stride: Optional[int] = None
    operation: ClassVar[Operation] = Operation.DUMP_MESH


@dataclass(frozen=True)
class MakeSparseMatchableRequest:
    operation: ClassVar[Operation] = Operation.MAKE_SPARSE_MATCHABLE


@dataclass(frozen=True, eq=False)
class MatchPosesRequest:
    pose_1: Pose
    pose_2: Pose
    operation: ClassVar[Operation] = Operation.MATCH_POSES


@dataclass(frozen=True, eq=False)
class CustomRequest:
    """在独占规划器状态（持有规划器锁）的情况下执行 fn(planner)"""
    fn: Callable[[ViewpointPlanner], Any]
    operation: ClassVar[Operation] = Operation.CUSTOM_REQUEST


class PlannerFuture(Future):
    """携带请求编号与操作类型的 Future"""

    def __init__(self, request_id: int, operation: Operation) -> None:
        super().__init__()
        self.request_id = request_id
        self.operation = operation


@dataclass
class _Job:
    request_id: int
    request: Any
    future: PlannerFuture


# ─── 协作式暂停 / 取消 ───────────────────────────────────

class Checkpoint:
    """安全点：暂停时阻塞，返回值表示是否应取消当前操作

    作为 should_stop 回调传给各个操作。
    """

    _POLL_INTERVAL = 0.05

    def __init__(self) -> None:
        self._running = threading.Event()
        self._running.set()
        self._cancel = threading.Event()
        self.on_pause: Optional[Callable[[], None]] = None
        self.on_resume: Optional[Callable[[], None]] = None

    @property
    def is_paused(self) -> bool:
        return not self._running.is_set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def pause(self) -> None:
        self._running.clear()

    def resume(self) -> None:
        self._running.set()

    def cancel(self) -> None:
        self._cancel.set()

    def clear_cancel(self) -> None:
        self._cancel.clear()

    def __call__(self) -> bool:
        if not self._running.is_set() and not self._cancel.is_set():
            if self.on_pause is not None:
                self.on_pause()
            while not self._running.wait(self._POLL_INTERVAL):
                if self._cancel.is_set():
                    break
            if self.on_resume is not None:
                self.on_resume()
        return self._cancel.is_set()


# ─── 后台线程 ────────────────────────────────────────────

class PlannerWorker(threading.Thread):
    """规划后台线程

    Args:
        planner: 被驱动的规划器
        queue_size: 命令队列容量（缺省取 planner.config.worker_queue_size）

    Example:
        >>> worker = PlannerWorker(planner)
        >>> worker.start()
        >>> future = worker.submit(GrowGraphRequest(count=20))
        >>> stats = future.result()
        >>> worker.stop()
    """

    def __init__(
        self,
        planner: ViewpointPlanner,
        queue_size: Optional[int] = None,
        name: str = "planner-worker",
    ) -> None:
        super().__init__(name=name, daemon=True)
        self.planner = planner
        self.queue_size = queue_size or planner.config.worker_queue_size
        self._queue: Deque[_Job] = deque()
        self._cond = threading.Condition()
        self._checkpoint = Checkpoint()
        self._checkpoint.on_pause = lambda: self._set_state(WorkerState.PAUSED)
        self._checkpoint.on_resume = lambda: self._set_state(WorkerState.RUNNING)
        self._state = WorkerState.IDLE
        self._operation = Operation.NOP
        self._current: Optional[_Job] = None
        self._results: Dict[Operation, Tuple[int, Any]] = {}
        self._listeners: Dict[Operation, List[Callable]] = defaultdict(list)
        self._ids = itertools.count(1)
        self._shutdown = False
        self._handlers: Dict[Operation, Callable[[Any], Any]] = {
            Operation.NOP: lambda req: None,
            Operation.GROW_GRAPH: self._grow_graph,
            Operation.BUILD_MOTIONS: lambda req: planner.build_motions(
                should_stop=self._checkpoint),
            Operation.BUILD_PATH: lambda req: planner.build_path(
                budget=req.budget, n_branches=req.n_branches,
                start=req.start, component=req.component,
                should_stop=self._checkpoint),
            Operation.SOLVE_TSP: lambda req: planner.solve_tsp(
                should_stop=self._checkpoint),
            Operation.RAYCAST: lambda req: planner.raycast(
                req.pose, window=req.window, mode=req.mode, stride=req.stride,
                should_stop=self._checkpoint),
            Operation.DUMP_MESH: lambda req: planner.dump_mesh(
                req.pose, filepath=req.filepath, stride=req.stride,
                should_stop=self._checkpoint),
            Operation.MAKE_SPARSE_MATCHABLE: lambda req: planner.make_sparse_matchable(
                should_stop=self._checkpoint),
            Operation.MATCH_POSES: lambda req: planner.match_poses(req.pose_1, req.pose_2),
            Operation.CUSTOM_REQUEST: self._custom_request,
        }

    # ── 状态查询 ──

    @property
    def state(self) -> WorkerState:
        with self._cond:
            return self._state

    @property
    def operation(self) -> Operation:
        with self._cond:
            return self._operation

    @property
    def n_pending(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def is_paused(self) -> bool:
        return self._checkpoint.is_paused

    @property
    def checkpoint(self) -> Checkpoint:
        """当前安全点（自定义请求可作为 should_stop 传入规划操作）"""
        return self._checkpoint

    def _set_state(self, state: WorkerState, operation: Optional[Operation] = None) -> None:
        with self._cond:
            self._state = state
            if operation is not None:
                self._operation = operation
            self._cond.notify_all()

    # ── 命令 ──

    def submit(self, request: Any) -> PlannerFuture:
        """提交请求，返回该请求专属的 Future

        Raises:
            InvalidRequestError: worker 已停止或请求类型未知
        """
        operation = getattr(request, 'operation', None)
        if operation not in self._handlers:
            raise InvalidRequestError(f"未知请求类型: {type(request).__name__}")
        with self._cond:
            if self._shutdown:
                raise InvalidRequestError("worker 已停止，不再接受请求")
            job = _Job(next(self._ids), request, None)
            job.future = PlannerFuture(job.request_id, operation)
            if len(self._queue) >= self.queue_size:
                dropped = self._queue.popleft()
                dropped.future.cancel()
                logger.warning("命令队列已满，丢弃最早的请求 #%d (%s)",
                               dropped.request_id, dropped.future.operation.value)
            self._queue.append(job)
            self._cond.notify_all()
        logger.debug("submit #%d %s", job.request_id, operation.value)
        return job.future

    def run_custom(self, fn: Callable[[ViewpointPlanner], Any], timeout: Optional[float] = None) -> Any:
        """提交自定义工作单元并同步等待其结果"""
        return self.submit(CustomRequest(fn)).result(timeout)

    def pause(self) -> None:
        """在下一个安全点暂停（空闲时不再取新请求）

        FINISHED 状态保持不变，直到结果被取走。
        """
        self._checkpoint.pause()
        with self._cond:
            if self._current is None and self._state is WorkerState.IDLE:
                self._state = WorkerState.PAUSED
            self._cond.notify_all()
        logger.info("worker 暂停请求")

    def resume(self) -> None:
        self._checkpoint.resume()
        with self._cond:
            if self._current is None and self._state is WorkerState.PAUSED:
                self._state = WorkerState.IDLE
            self._cond.notify_all()
        logger.info("worker 恢复")

    def cancel(self, request_id: Optional[int] = None) -> bool:
        """取消请求

        request_id 为 None 或等于当前运行请求时，协作式取消当前操作；
        否则从队列中移除该待处理请求。返回是否找到目标。
        """
        with self._cond:
            current = self._current
            if request_id is None or (current is not None and current.request_id == request_id):
                if current is None:
                    return False
                self._checkpoint.cancel()
                return True
            for job in list(self._queue):
                if job.request_id == request_id:
                    self._queue.remove(job)
                    job.future.cancel()
                    return True
        return False

    def stop(self, timeout: Optional[float] = None) -> None:
        """停止线程：取消当前操作与所有待处理请求"""
        with self._cond:
            self._shutdown = True
            pending = list(self._queue)
            self._queue.clear()
            self._cond.notify_all()
        for job in pending:
            job.future.cancel()
        self._checkpoint.cancel()
        self._checkpoint.resume()
        if self.is_alive():
            self.join(timeout)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """等待队列清空且没有运行中的操作"""
        with self._cond:
            return self._cond.wait_for(
                lambda: not self._queue and self._current is None, timeout)

    # ── 结果 ──

    def add_listener(
        self, operation: Operation,
        callback: Callable[[int, Operation, Any], None],
    ) -> None:
        """注册完成通知 callback(request_id, operation, result)（在 worker 线程中调用）"""
        with self._cond:
            self._listeners[operation].append(callback)

    def remove_listener(self, operation: Operation, callback: Callable) -> None:
        with self._cond:
            if callback in self._listeners[operation]:
                self._listeners[operation].remove(callback)

    def peek_result(self, operation: Operation) -> Optional[Tuple[int, Any]]:
        with self.planner.lock:
            return self._results.get(operation)

    def take_result(self, operation: Operation) -> Optional[Tuple[int, Any]]:
        """取走某操作最近的 (request_id, result)；取走后 worker 回到 IDLE
        （已请求暂停时为 PAUSED）"""
        with self.planner.lock:
            item = self._results.pop(operation, None)
        with self._cond:
            if (item is not None and self._state is WorkerState.FINISHED
                    and self._operation is operation):
                self._state = (WorkerState.PAUSED if self._checkpoint.is_paused
                               else WorkerState.IDLE)
                self._operation = Operation.NOP
                self._cond.notify_all()
        return item

    # ── 线程主循环 ──

    def run(self) -> None:
        logger.info("worker 启动")
        while True:
            with self._cond:
                self._cond.wait_for(
                    lambda: self._shutdown or (self._queue and not self._checkpoint.is_paused))
                if self._shutdown:
                    self._state = WorkerState.STOPPED
                    self._operation = Operation.NOP
                    self._cond.notify_all()
                    break
                job = self._queue.popleft()
                if not job.future.set_running_or_notify_cancel():
                    continue
                self._current = job
                self._checkpoint.clear_cancel()
                self._state = WorkerState.RUNNING
                self._operation = job.future.operation
                self._cond.notify_all()
            self._run_job(job)
        logger.info("worker 退出")

    def _run_job(self, job: _Job) -> None:
        operation = job.future.operation
        try:
            result = self._handlers[operation](job.request)
        except PlannerError as exc:
            logger.error("请求 #%d %s 失败: %s", job.request_id, operation.value, exc)
            self._finish_failed(job, exc)
            return
        except Exception as exc:
            logger.exception("请求 #%d %s 异常", job.request_id, operation.value)
            self._finish_failed(job, exc)
            return

        with self.planner.lock:
            if operation in self._results:
                stale_id, _ = self._results[operation]
                logger.warning("%s 的结果 #%d 未被读取，已被 #%d 覆盖",
                               operation.value, stale_id, job.request_id)
            self._results[operation] = (job.request_id, result)
        with self._cond:
            self._current = None
            self._state = WorkerState.FINISHED
            self._operation = operation
            listeners = list(self._listeners[operation])
            self._cond.notify_all()
        for callback in listeners:
            try:
                callback(job.request_id, operation, result)
            except Exception:
                logger.exception("%s 完成通知回调异常", operation.value)
        job.future.set_result(result)
        logger.debug("请求 #%d %s 完成", job.request_id, operation.value)

    def _finish_failed(self, job: _Job, exc: BaseException) -> None:
        with self._cond:
            self._current = None
            self._state = WorkerState.IDLE
            self._operation = Operation.NOP
            self._cond.notify_all()
        job.future.set_exception(exc)

    # ── 操作适配 ──

    def _grow_graph(self, req: GrowGraphRequest):
        region = None
        if req.region is not None:
            region = (np.asarray(req.region[0], dtype=np.float64),
                      np.asarray(req.region[1], dtype=np.float64))
        return self.planner.grow_graph(req.count, region=region, should_stop=self._checkpoint)

    def _custom_request(self, req: CustomRequest):
        with self.planner.lock:
            return req.fn(self.planner)
