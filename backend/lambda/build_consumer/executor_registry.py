"""executor_registry.py — Executor contract, name registry, per-region cache.

Executors provision or tear down build compute for one platform. The
registry is read-only once built, so workers resolve from it concurrently
without locking. Registries are built per build region, at most once each.
"""
from __future__ import annotations

import threading
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from build_message import BuildConfig
from config import logger

__all__ = [
    "Executor",
    "ExecutorError",
    "ExecutorRegistry",
    "RegionalExecutorCache",
    "default_registry",
]


class ExecutorError(RuntimeError):
    """The platform API rejected or failed a start/stop call."""


class Executor(Protocol):
    name: str

    def start(self, config: BuildConfig) -> str:
        """Provision compute for the build; return its location handle."""

    def stop(self, config: BuildConfig) -> None:
        """Tear down compute for the build."""


class ExecutorRegistry:
    """Ordered executors looked up by exact name."""

    def __init__(self, executors: Iterable[Executor] = ()):
        self._executors: List[Executor] = []
        for executor in executors:
            self.register(executor)

    def register(self, executor: Executor) -> None:
        if self.resolve(executor.name) is not None:
            raise ValueError(f"Executor '{executor.name}' is already registered")
        self._executors.append(executor)

    def resolve(self, name: str) -> Optional[Executor]:
        for executor in self._executors:
            if executor.name == name:
                return executor
        return None

    def names(self) -> List[str]:
        return [executor.name for executor in self._executors]

    def __len__(self) -> int:
        return len(self._executors)


class RegionalExecutorCache:
    """Lazily build one registry per region.

    ``factory`` runs at most once per region even when several workers ask
    for the same region at the same time; distinct regions build in
    parallel.
    """

    def __init__(self, factory: Callable[[str], ExecutorRegistry]):
        self._factory = factory
        self._registries: Dict[str, ExecutorRegistry] = {}
        self._key_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def registry_for(self, region: str) -> ExecutorRegistry:
        registry = self._registries.get(region)
        if registry is not None:
            return registry
        with self._lock:
            key_lock = self._key_locks.setdefault(region, threading.Lock())
        with key_lock:
            registry = self._registries.get(region)
            if registry is None:
                logger.info("Building executors for region %s", region)
                registry = self._factory(region)
                self._registries[region] = registry
        return registry

    def __call__(self, region: str) -> ExecutorRegistry:
        return self.registry_for(region)

    def regions(self) -> List[str]:
        return sorted(self._registries)


def default_registry(region: str) -> ExecutorRegistry:
    """Production executors for one build region."""
    from eks_executor import EksExecutor
    from serverless_executor import ServerlessExecutor

    return ExecutorRegistry([EksExecutor(region), ServerlessExecutor(region)])
