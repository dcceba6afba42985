"""
状态历史持久化

整份 JSON 文件替换式写入：先写临时文件，再原子 rename 覆盖，
写到一半崩溃也不会破坏上一份完整的文件。

内存序列采用写时复制：每次追加都生成新列表，已发布的列表不再修改。
写者之间由写入互斥锁串行化，落盘期间不持有读写锁，读者继续看到上一份序列；
落盘成功后才在写锁内替换序列引用。
"""

import bisect
import logging
import os
import threading
import time
from contextlib import contextmanager, suppress
from datetime import datetime
from pathlib import Path
from typing import Generic, List, Optional, Sequence, Tuple, Type, TypeVar, Union

from pydantic import TypeAdapter, ValidationError

from .models import ConnectivityStatus, StatusEntry, ensure_utc

logger = logging.getLogger(__name__)

T = TypeVar("T", StatusEntry, ConnectivityStatus)


class StorageError(Exception):
    """存储层异常基类"""


class PersistenceError(StorageError):
    """落盘失败（内存状态保持不变）"""


class MalformedHistoryError(StorageError):
    """磁盘上的历史文件损坏，启动时致命"""


class HistoryOrderError(StorageError, ValueError):
    """追加的记录早于当前最新记录"""


class ReadWriteLock:
    """
    读写锁

    多个读者可以并发持有；写者独占。
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read_locked(self):
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_locked(self):
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class _JsonSeriesStorage(Generic[T]):
    """按时间升序的只追加序列，整文件持久化"""

    label = "history"

    def __init__(self, path: Union[str, Path], model: Type[T]):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

        self._adapter = TypeAdapter(List[model])
        self._lock = ReadWriteLock()
        self._write_mutex = threading.Lock()
        # (条目, 时间戳) 一起替换，读者拿到的是一致的一对
        self._series: Tuple[List[T], List[datetime]] = ([], [])
        self._version = 0

        items = self._load()
        self._series = (items, [self._timestamp(item) for item in items])

    def _timestamp(self, item: T) -> datetime:
        """排序用的时间戳（子类必须实现）"""
        raise NotImplementedError

    # =========================================================================
    # 读操作
    # =========================================================================

    def _snapshot(self) -> Tuple[List[T], List[datetime]]:
        with self._lock.read_locked():
            return self._series

    def latest(self) -> Optional[T]:
        """最新一条记录，没有则返回 None"""
        items, _ = self._snapshot()
        if not items:
            return None
        return items[-1]

    def history(self) -> List[T]:
        """完整历史（副本）"""
        items, _ = self._snapshot()
        return list(items)

    def history_since(self, cutoff: datetime) -> List[T]:
        """时间戳 >= cutoff 的所有记录（副本）"""
        items, stamps = self._snapshot()
        idx = bisect.bisect_left(stamps, ensure_utc(cutoff))
        return items[idx:]

    def history_n(self, n: int) -> List[T]:
        """最近 n 条记录（按时间升序）；n <= 0 时返回全部"""
        items, _ = self._snapshot()
        if n <= 0 or n >= len(items):
            return list(items)
        return items[len(items) - n:]

    @property
    def version(self) -> int:
        """加载以来的写入次数（单调递增）"""
        with self._lock.read_locked():
            return self._version

    def __len__(self) -> int:
        items, _ = self._snapshot()
        return len(items)

    # =========================================================================
    # 写操作
    # =========================================================================

    def _commit(self, items: List[T]):
        """先落盘再替换内存序列；调用方必须持有 _write_mutex"""
        self._persist(items)
        stamps = [self._timestamp(item) for item in items]
        with self._lock.write_locked():
            self._series = (items, stamps)
            self._version += 1

    def _check_order(self, items: Sequence[T]):
        previous = None
        for index, item in enumerate(items):
            ts = self._timestamp(item)
            if previous is not None and ts < previous:
                raise HistoryOrderError(
                    f"{self.label} entry {index} at {ts.isoformat()} is older than {previous.isoformat()}"
                )
            previous = ts

    def _load(self) -> List[T]:
        try:
            data = self.path.read_bytes()
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StorageError(f"read {self.label}: {e}") from e

        if not data.strip():
            return []

        try:
            items = self._adapter.validate_json(data)
            self._check_order(items)
        except (ValidationError, HistoryOrderError) as e:
            raise MalformedHistoryError(f"parse {self.label} ({self.path}): {e}") from e

        logger.info(f"Loaded {len(items)} {self.label} entries from {self.path}")
        return items

    def _persist(self, items: List[T]):
        payload = self._adapter.dump_json(items, indent=2)
        tmp_path = self.path.with_name(f"{self.path.name}.{time.time_ns()}.tmp")
        try:
            with open(tmp_path, "wb") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            with suppress(OSError):
                tmp_path.unlink()
            raise PersistenceError(f"write {self.label} {self.path}: {e}") from e


class StatusStorage(_JsonSeriesStorage[StatusEntry]):
    """采集历史（StatusEntry 序列）"""

    label = "status history"

    def __init__(self, path: Union[str, Path]):
        super().__init__(path, StatusEntry)

    def _timestamp(self, item: StatusEntry) -> datetime:
        return item.timestamp

    def append(self, entry: StatusEntry):
        """
        追加一条记录并持久化

        Raises:
            HistoryOrderError: entry 早于当前最新记录
            PersistenceError: 写盘失败，内存序列不变
        """
        with self._write_mutex:
            items, _ = self._series
            if items and entry.timestamp < items[-1].timestamp:
                raise HistoryOrderError(
                    f"entry at {entry.timestamp.isoformat()} is older than latest {items[-1].timestamp.isoformat()}"
                )
            self._commit(items + [entry])


class ConnectivityStorage(_JsonSeriesStorage[ConnectivityStatus]):
    """连通性探测历史（有上限，超出时丢弃最旧的样本）"""

    label = "connectivity history"

    def __init__(self, path: Union[str, Path], max_history: int = 0):
        super().__init__(path, ConnectivityStatus)
        self.max_history = max_history
        if max_history > 0 and len(self._series[0]) > max_history:
            items = self._series[0][-max_history:]
            self._series = (items, [self._timestamp(item) for item in items])

    def _timestamp(self, item: ConnectivityStatus) -> datetime:
        return item.checked_at

    def _trim(self, items: List[ConnectivityStatus]) -> List[ConnectivityStatus]:
        if self.max_history > 0 and len(items) > self.max_history:
            return items[-self.max_history:]
        return items

    def append(self, sample: ConnectivityStatus):
        """追加一个样本并持久化"""
        with self._write_mutex:
            items, _ = self._series
            if items and sample.checked_at < items[-1].checked_at:
                raise HistoryOrderError(
                    f"sample at {sample.checked_at.isoformat()} is older than latest {items[-1].checked_at.isoformat()}"
                )
            self._commit(self._trim(items + [sample]))

    def replace(self, entries: Sequence[ConnectivityStatus]):
        """用给定样本整体替换历史"""
        items = list(entries)
        self._check_order(items)
        with self._write_mutex:
            self._commit(self._trim(items))
