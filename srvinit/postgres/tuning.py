"""PostgreSQL memory and worker sizing derived from host resources.

The rules are the usual community heuristics: a quarter of RAM for shared
buffers, three quarters as the planner's cache estimate, connection count
tiered by RAM, and work_mem spread across three sorts per connection. Every
value is clamped so tiny and huge hosts still get a sane configuration.
"""
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

LOG = logging.getLogger(__name__)

SHARED_BUFFERS_MIN_MIB = 128
SHARED_BUFFERS_MAX_MIB = 8192
EFFECTIVE_CACHE_MAX_MIB = 24576
MAINTENANCE_WORK_MEM_MIN_MIB = 64
MAINTENANCE_WORK_MEM_MAX_MIB = 2048
WORK_MEM_MIN_KIB = 64
WORK_MEM_MAX_KIB = 16384
MAX_CONNECTIONS_FLOOR = 20
CHECKPOINT_COMPLETION_TARGET = 0.9

# Written alongside the sizing on every host.
STATIC_SETTINGS = {
    'default_statistics_target': '100',
    'random_page_cost': '1.1',
    'min_wal_size': '1GB',
    'max_wal_size': '4GB',
}


class StorageMedium(str, Enum):
    ROTATIONAL = 'rotational'
    SOLID_STATE = 'solid_state'


@dataclass(frozen=True)
class HostResourceProfile:
    total_memory_mib: int
    cpu_core_count: int
    storage_medium: StorageMedium = StorageMedium.ROTATIONAL


@dataclass(frozen=True)
class TuningParameterSet:
    max_connections: int
    shared_buffers_mib: int
    effective_cache_size_mib: int
    maintenance_work_mem_mib: int
    work_mem_kib: int
    wal_buffers_mib: int
    effective_io_concurrency: int
    max_worker_processes: int
    max_parallel_workers: int
    max_parallel_workers_per_gather: int
    checkpoint_completion_target: float = CHECKPOINT_COMPLETION_TARGET

    def as_settings(self) -> dict[str, str]:
        """postgresql.conf settings in the order they are written."""
        settings = {
            'max_connections': str(self.max_connections),
            'shared_buffers': f'{self.shared_buffers_mib}MB',
            'effective_cache_size': f'{self.effective_cache_size_mib}MB',
            'maintenance_work_mem': f'{self.maintenance_work_mem_mib}MB',
            'work_mem': f'{self.work_mem_kib}kB',
            'wal_buffers': f'{self.wal_buffers_mib}MB',
            'checkpoint_completion_target': str(self.checkpoint_completion_target),
            'effective_io_concurrency': str(self.effective_io_concurrency),
            'max_worker_processes': str(self.max_worker_processes),
            'max_parallel_workers': str(self.max_parallel_workers),
            'max_parallel_workers_per_gather': str(self.max_parallel_workers_per_gather),
        }
        settings.update(STATIC_SETTINGS)
        return settings


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(value, high))


def _max_connections(total_memory_mib: int) -> int:
    if total_memory_mib <= 1024:
        connections = 50
    elif total_memory_mib <= 4096:
        connections = 100
    else:
        connections = 200
    return max(connections, MAX_CONNECTIONS_FLOOR)


def compute_tuning(profile: HostResourceProfile) -> TuningParameterSet:
    mem = max(profile.total_memory_mib, 0)
    cpus = max(profile.cpu_core_count, 1)

    shared_buffers = _clamp(mem // 4, SHARED_BUFFERS_MIN_MIB, SHARED_BUFFERS_MAX_MIB)
    effective_cache = min(mem * 3 // 4, EFFECTIVE_CACHE_MAX_MIB)
    maintenance_work_mem = _clamp(mem // 20, MAINTENANCE_WORK_MEM_MIN_MIB,
                                  MAINTENANCE_WORK_MEM_MAX_MIB)
    max_connections = _max_connections(mem)

    # shared_buffers can exceed RAM on tiny hosts, the clamp covers the negative case
    work_mem = (mem - shared_buffers) * 1024 // (max_connections * 3)
    work_mem = _clamp(work_mem, WORK_MEM_MIN_KIB, WORK_MEM_MAX_KIB)

    if shared_buffers < 4096:
        wal_buffers = shared_buffers // 8
    else:
        wal_buffers = 16

    io_concurrency = 2 if profile.storage_medium == StorageMedium.ROTATIONAL else 200

    params = TuningParameterSet(
        max_connections=max_connections,
        shared_buffers_mib=shared_buffers,
        effective_cache_size_mib=effective_cache,
        maintenance_work_mem_mib=maintenance_work_mem,
        work_mem_kib=work_mem,
        wal_buffers_mib=wal_buffers,
        effective_io_concurrency=io_concurrency,
        max_worker_processes=cpus,
        max_parallel_workers=cpus,
        max_parallel_workers_per_gather=max(cpus // 2, 1),
    )
    LOG.debug("tuning for %s: %s", profile, params)
    return params


class HostInspector:
    """Reads the facts compute_tuning needs from procfs and sysfs."""

    def __init__(self, proc_root: Path = Path('/proc'), sys_root: Path = Path('/sys'),
                 data_path: Path = Path('/')):
        self.proc_root = proc_root
        self.sys_root = sys_root
        self.data_path = data_path

    def collect(self) -> HostResourceProfile:
        profile = HostResourceProfile(
            total_memory_mib=self.total_memory_mib(),
            cpu_core_count=os.cpu_count() or 1,
            storage_medium=self.storage_medium(),
        )
        LOG.info("host resources: %s MiB RAM, %s CPUs, %s storage",
                 profile.total_memory_mib, profile.cpu_core_count, profile.storage_medium.value)
        return profile

    def total_memory_mib(self) -> int:
        meminfo = self.proc_root / 'meminfo'
        try:
            with meminfo.open(encoding='utf-8') as fh:
                for line in fh:
                    if line.startswith('MemTotal:'):
                        return int(line.split()[1]) // 1024
        except (OSError, ValueError, IndexError) as e:
            LOG.warning("cannot read %s: %s", meminfo, e)
        return 0

    def storage_medium(self) -> StorageMedium:
        flag = self._rotational_flag()
        if flag == '0':
            return StorageMedium.SOLID_STATE
        return StorageMedium.ROTATIONAL

    def _rotational_flag(self) -> Optional[str]:
        try:
            dev = os.stat(self.data_path).st_dev
        except OSError:
            return None

        device_dir = self.sys_root / 'dev' / 'block' / f'{os.major(dev)}:{os.minor(dev)}'
        try:
            device_dir = device_dir.resolve(strict=True)
        except OSError:
            LOG.debug("no sysfs entry for device %s", device_dir.name)
            return None

        # partitions have no queue/ of their own, the parent disk does
        for candidate in (device_dir, device_dir.parent):
            flag_file = candidate / 'queue' / 'rotational'
            if flag_file.is_file():
                return flag_file.read_text(encoding='utf-8').strip()
        return None
