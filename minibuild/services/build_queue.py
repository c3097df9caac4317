"""构建任务队列

优先级队列（数字越小越优先，同优先级先进先出）+ 固定数量的工作线程。
任务记录持久化在数据库中，进程重启后由 recover() 重新入队。
"""
import heapq
import itertools
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from minibuild.errors import DuplicateActiveTask, QueueFull
from minibuild.models.build_task import TaskStatus
from minibuild.services.build_service import error_message, is_transient

logger = logging.getLogger(__name__)


@dataclass
class QueuedJob:
    task_id: str
    priority: int = 2
    attempts: int = 3
    attempt: int = 0  # 已失败的投递次数

    @property
    def final_attempt(self):
        return self.attempt + 1 >= self.attempts


class BuildQueue:
    """构建任务队列管理器"""

    def __init__(self, app, executor_factory=None, store=None, max_size=200, concurrency=3,
                 default_attempts=3, backoff=2.0):
        self.app = app
        self.executor_factory = executor_factory
        self.store = store
        self.max_size = max_size
        self.concurrency = concurrency
        self.default_attempts = default_attempts
        self.backoff = backoff

        # 入队准入锁：容量检查、重复检查、写库、入队需要在同一临界区内完成
        self.admission_lock = threading.RLock()

        self._cond = threading.Condition()
        self._sequence = itertools.count()
        self._ready = []  # (priority, seq, job)
        self._delayed = []  # (not_before, seq, job)
        self._active = {}  # task_id -> job
        self._running = False
        self._executor = None

    # ==================== 入队 ====================

    def size(self):
        with self._cond:
            return len(self._ready) + len(self._delayed) + len(self._active)

    def is_full(self):
        return self.size() >= self.max_size

    def check_capacity(self):
        if self.is_full():
            raise QueueFull(f'构建队列已满（{self.max_size}），请稍后再试')

    def contains(self, task_id):
        with self._cond:
            return task_id in self._active or any(
                job.task_id == task_id for _, _, job in self._ready + self._delayed
            )

    def submit(self, task_id, priority=2, attempts=None, force=False):
        """任务入队

        Args:
            priority: 1-3，数字越小越优先
            attempts: 最大投递次数，默认使用队列配置
            force: 跳过容量检查（进程重启恢复时使用）
        """
        job = QueuedJob(
            task_id=task_id,
            priority=priority or 2,
            attempts=attempts or self.default_attempts,
        )
        with self._cond:
            if not force:
                self.check_capacity()
            if self.contains(task_id):
                raise DuplicateActiveTask(f'任务已在队列中: {task_id}')
            heapq.heappush(self._ready, (job.priority, next(self._sequence), job))
            self._cond.notify()
        logger.info(f"任务已入队: task_id={task_id}, priority={job.priority}, attempts={job.attempts}")
        return job

    def cancel(self, task_id):
        """移除等待中的任务，返回是否移除成功（运行中的任务由执行器在步骤间检查取消）"""
        with self._cond:
            removed = False
            for name in ('_ready', '_delayed'):
                entries = getattr(self, name)
                kept = [entry for entry in entries if entry[2].task_id != task_id]
                if len(kept) != len(entries):
                    heapq.heapify(kept)
                    setattr(self, name, kept)
                    removed = True
        if removed:
            logger.info(f"已从队列移除任务: task_id={task_id}")
        return removed

    def status(self):
        with self._cond:
            return {
                'waiting': len(self._ready),
                'delayed': len(self._delayed),
                'active': len(self._active),
                'capacity': self.max_size,
                'concurrency': self.concurrency,
            }

    # ==================== 调度 ====================

    def _promote_delayed(self, now):
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job = heapq.heappop(self._delayed)
            heapq.heappush(self._ready, (job.priority, next(self._sequence), job))

    def _take_next(self, block=True):
        """取出下一个可执行的任务，队列停止时返回 None"""
        with self._cond:
            while True:
                self._promote_delayed(time.monotonic())
                if self._ready:
                    _, _, job = heapq.heappop(self._ready)
                    self._active[job.task_id] = job
                    return job
                if not block or not self._running:
                    return None
                timeout = None
                if self._delayed:
                    timeout = max(self._delayed[0][0] - time.monotonic(), 0)
                self._cond.wait(timeout)

    def _run_job(self, job):
        retry_delay = None
        try:
            with self.app.app_context():
                executor = self.executor_factory(job.task_id)
                executor.run(final_attempt=job.final_attempt)
        except Exception as e:
            if is_transient(e) and not job.final_attempt:
                retry_delay = self.backoff * (2 ** job.attempt)
                logger.warning(
                    f"任务执行失败，{retry_delay}秒后重试: task_id={job.task_id}, "
                    f"attempt={job.attempt + 1}/{job.attempts}, error={error_message(e)}"
                )
            else:
                logger.error(f"任务执行失败: task_id={job.task_id}, error={error_message(e)}")
        finally:
            with self._cond:
                self._active.pop(job.task_id, None)
                if retry_delay is not None:
                    job.attempt += 1
                    heapq.heappush(
                        self._delayed,
                        (time.monotonic() + retry_delay, next(self._sequence), job)
                    )
                self._cond.notify_all()

    def _worker_loop(self):
        logger.info(f"构建工作线程已启动: {threading.current_thread().name}")
        while True:
            job = self._take_next()
            if job is None:
                break
            self._run_job(job)
        logger.info(f"构建工作线程已退出: {threading.current_thread().name}")

    def run_pending(self):
        """在当前线程中依次执行所有可执行的任务，返回执行数量"""
        count = 0
        while True:
            job = self._take_next(block=False)
            if job is None:
                return count
            self._run_job(job)
            count += 1

    def start(self):
        if self._running:
            return
        self._running = True
        self._executor = ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix='build-worker'
        )
        for _ in range(self.concurrency):
            self._executor.submit(self._worker_loop)
        logger.info(f"构建队列已启动: 并发数={self.concurrency}, 容量={self.max_size}")

    def shutdown(self, wait=True):
        """停止队列：不再取新任务，等待运行中的任务结束；未执行的任务保留在数据库中"""
        with self._cond:
            self._running = False
            self._cond.notify_all()
        if self._executor:
            self._executor.shutdown(wait=wait)
            self._executor = None
        logger.info("构建队列已停止")

    def recover(self):
        """恢复上次进程遗留的任务：PENDING 重新入队，RUNNING 重新执行"""
        recovered = 0
        for status in (TaskStatus.RUNNING, TaskStatus.PENDING):
            for task_id, priority in self.store.ids_by_status(status):
                if self.contains(task_id):
                    continue
                self.submit(task_id, priority=priority, force=True)
                recovered += 1
        if recovered:
            logger.info(f"已恢复 {recovered} 个未完成的任务")
        else:
            logger.info("没有需要恢复的任务")
        return recovered
