from __future__ import annotations

import logging
import threading
import warnings
from typing import Any, Callable, Mapping

from .config import ProjectConfig
from .errors import (
    CheckpointMissingError,
    DriftWarning,
    HashMismatchError,
    LoaderFailedError,
    NameMismatchError,
)
from .extractor import SpecExtractor
from .harness import execute_checkpoint
from .hashing import spec_hash
from .models import LoadedUnit, LoaderState, RuntimeMode
from .pipeline import Compiler, Stores
from .registry import UnitRegistry
from .settings import process_settings

logger = logging.getLogger(__name__)

CompilerFactory = Callable[[], Compiler]


class RuntimeLoader:
    """Resolves a unit to its active implementation under dev or prod rules.

    Prod mode is strict: a missing checkpoint or a spec hash mismatch is
    fatal, and no compiler or provider is ever constructed. Dev mode
    regenerates (compile, test, save) on either condition. A unit whose load
    failed stays ``failed`` until ``reset`` is called. Loads of one unit are
    serialized; loads of different units proceed independently.
    """

    def __init__(
        self,
        registry: UnitRegistry,
        config: ProjectConfig,
        *,
        mode: RuntimeMode | str | None = None,
        stores: Stores | None = None,
        compiler_factory: CompilerFactory | None = None,
        namespaces: Mapping[str, Mapping[str, Any]] | None = None,
        tool_version: str | None = None,
    ) -> None:
        self.registry = registry
        self.config = config
        self.mode = RuntimeMode(mode) if mode is not None else process_settings().resolve_mode(config.project.env)
        self.stores = stores if stores is not None else Stores.from_config(config)
        self.namespaces = dict(namespaces or {})
        self.extractor = SpecExtractor(config, registry.symbols, tool_version=tool_version)
        self._compiler_factory = compiler_factory
        self._compiler: Compiler | None = None
        self._states: dict[str, LoaderState] = {}
        self._failures: dict[str, BaseException] = {}
        self._loaded: dict[tuple[str, str], LoadedUnit] = {}
        self._lock = threading.Lock()
        self._unit_locks: dict[str, threading.RLock] = {}
        logger.info("Runtime loader initialised in %s mode", self.mode.value)

    def state(self, unit_id: str) -> LoaderState:
        return self._states.get(unit_id, LoaderState.UNINITIALIZED)

    def reset(self, unit_id: str) -> None:
        """Clear a failed state so the caller can retry."""
        with self._unit_lock(unit_id), self._lock:
            self._states.pop(unit_id, None)
            self._failures.pop(unit_id, None)

    def _unit_lock(self, unit_id: str) -> threading.RLock:
        with self._lock:
            lock = self._unit_locks.get(unit_id)
            if lock is None:
                lock = self._unit_locks[unit_id] = threading.RLock()
            return lock

    def _set_state(self, unit_id: str, state: LoaderState, failure: BaseException | None = None) -> None:
        with self._lock:
            self._states[unit_id] = state
            if failure is not None:
                self._failures[unit_id] = failure

    def load_active(self, unit_id: str) -> LoadedUnit:
        """Return the active implementation of a unit.

        Raises:
            CheckpointMissingError: Prod mode and nothing is active.
            HashMismatchError: Prod mode and the source drifted from the checkpoint.
            LoaderFailedError: A previous load of this unit failed.
        """
        with self._unit_lock(unit_id):
            if self.state(unit_id) is LoaderState.FAILED:
                raise LoaderFailedError(unit_id, self._failures[unit_id])
            self._set_state(unit_id, LoaderState.RESOLVING)
            try:
                loaded = self._resolve(unit_id)
            except Exception as exc:
                self._set_state(unit_id, LoaderState.FAILED, exc)
                logger.error("Loading %s failed: %s", unit_id, exc)
                raise
            self._set_state(unit_id, LoaderState.LOADED)
            return loaded

    def _resolve(self, unit_id: str) -> LoadedUnit:
        declaration = self.registry.get(unit_id)
        current = spec_hash(self.extractor.extract(declaration))

        active = self.stores.index.get(unit_id)
        if active is None:
            if self.mode is RuntimeMode.PROD:
                raise CheckpointMissingError(
                    f"no active checkpoint for {unit_id} (spec hash {current}); compile and save it before deploying",
                    unit_id=unit_id,
                )
            logger.info("No active checkpoint for %s; generating", unit_id)
            return self._regenerate(unit_id, current)

        try:
            stored = self.stores.checkpoints.read_meta(unit_id, active).spec_hash
        except CheckpointMissingError:
            if self.mode is RuntimeMode.PROD:
                raise
            logger.warning("Index points %s at missing checkpoint %s; regenerating", unit_id, active[:12])
            return self._regenerate(unit_id, current)

        if stored == current:
            return self._materialize(unit_id, active, current)

        if self.mode is RuntimeMode.PROD:
            raise HashMismatchError(unit_id, stored_hash=stored, current_hash=current)

        message = f"{unit_id} drifted: checkpoint spec hash {stored[:12]} != current {current[:12]}; regenerating"
        logger.warning("%s", message)
        warnings.warn(message, DriftWarning, stacklevel=3)
        return self._regenerate(unit_id, current)

    def _dev_compiler(self) -> Compiler:
        if self.mode is not RuntimeMode.DEV:
            raise RuntimeError("compilation is not available to the prod runtime loader")
        with self._lock:
            if self._compiler is None:
                if self._compiler_factory is not None:
                    self._compiler = self._compiler_factory()
                else:
                    self._compiler = Compiler(self.registry, self.config, stores=self.stores, namespaces=self.namespaces)
            return self._compiler

    def _regenerate(self, unit_id: str, current: str) -> LoadedUnit:
        self._set_state(unit_id, LoaderState.REGENERATING)
        result = self._dev_compiler().compile_test_save(unit_id)
        if result.spec_hash != current:
            raise HashMismatchError(unit_id, stored_hash=result.spec_hash, current_hash=current)
        return self._materialize(unit_id, result.h_chk, current)

    def _materialize(self, unit_id: str, h_chk: str, current: str) -> LoadedUnit:
        cached = self._loaded.get((unit_id, h_chk))
        if cached is not None:
            return cached
        declaration = self.registry.get(unit_id)
        checkpoint = self.stores.checkpoints.read(unit_id, h_chk)
        namespace = execute_checkpoint(checkpoint, self.namespaces.get(declaration.module))
        implementation = namespace.get(declaration.name)
        if not callable(implementation):
            raise NameMismatchError(
                f"checkpoint {h_chk[:12]} for {unit_id} does not define callable {declaration.name!r}",
                unit_id=unit_id,
            )
        loaded = LoadedUnit(
            unit_id=unit_id,
            h_chk=h_chk,
            spec_hash=current,
            implementation=implementation,
            namespace=namespace,
        )
        with self._lock:
            self._loaded[(unit_id, h_chk)] = loaded
        logger.info("Loaded %s@%s", unit_id, h_chk[:12])
        return loaded
