from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Iterable, Mapping

from .cache import CacheStore
from .canonical import sha256_text
from .checkpoints import CheckpointStore
from .config import ProjectConfig
from .errors import CheckpointMissingError, SpeclockError, TestsFailedError
from .extractor import SpecExtractor
from .harness import CommandGate, TestHarness
from .hashing import HASH_SCHEME_VERSION, checkpoint_hash, spec_hash
from .index import ActiveIndex
from .models import (
    BatchItem,
    BatchReport,
    CheckpointMeta,
    CompileResult,
    SpecRecord,
    TestReport,
    UnitState,
    UnitStatus,
)
from .prompts import PromptRenderer
from .providers import Provider, ProviderFactory, build_provider, params_for
from .registry import Declaration, UnitRegistry
from .validator import validate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Stores:
    checkpoints: CheckpointStore
    cache: CacheStore
    index: ActiveIndex

    @classmethod
    def from_config(cls, config: ProjectConfig) -> "Stores":
        return cls(
            checkpoints=CheckpointStore(config.checkpoints_root),
            cache=CacheStore(config.cache_root),
            index=ActiveIndex(config.index_path),
        )


class Compiler:
    """Compile, test and activate units.

    Compilation produces candidate checkpoints and never touches the index;
    only ``save_unit`` (or ``compile_test_save``) activates. Each unit only
    touches its own cache and checkpoint paths, so distinct units compile
    in parallel without locking. Concurrent compiles of the same spec hash
    share one provider call through the in-flight map.
    """

    def __init__(
        self,
        registry: UnitRegistry,
        config: ProjectConfig,
        *,
        stores: Stores | None = None,
        provider_factory: ProviderFactory | None = None,
        harness: TestHarness | None = None,
        namespaces: Mapping[str, Mapping[str, Any]] | None = None,
        tool_version: str | None = None,
    ) -> None:
        self.registry = registry
        self.config = config
        self.stores = stores if stores is not None else Stores.from_config(config)
        self.extractor = SpecExtractor(config, registry.symbols, tool_version=tool_version)
        self.renderer = PromptRenderer(config.root, registry.symbols)
        self.harness = harness if harness is not None else TestHarness(
            [CommandGate.from_config(gate) for gate in config.gates]
        )
        self.namespaces = dict(namespaces or {})
        self._provider_factory = provider_factory or (lambda name: build_provider(config, name))
        self._providers: dict[str, Provider] = {}
        self._providers_lock = threading.Lock()
        self._inflight: dict[tuple[str, str], Future[str]] = {}
        self._inflight_lock = threading.Lock()
        self._last_compiled: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Spec
    # ------------------------------------------------------------------

    def spec_for(self, unit_id: str) -> SpecRecord:
        return self.extractor.extract(self.registry.get(unit_id))

    def current_hash(self, unit_id: str) -> str:
        return spec_hash(self.spec_for(unit_id))

    def namespace_for(self, declaration: Declaration) -> Mapping[str, Any] | None:
        return self.namespaces.get(declaration.module)

    # ------------------------------------------------------------------
    # Provider access
    # ------------------------------------------------------------------

    def _provider(self, name: str) -> Provider:
        with self._providers_lock:
            provider = self._providers.get(name)
            if provider is None:
                provider = self._provider_factory(name)
                self._providers[name] = provider
            return provider

    def _generate(self, spec: SpecRecord, spec_sha: str, prompt_text: str, prompt_sha: str) -> str:
        key = (spec_sha, prompt_sha)
        with self._inflight_lock:
            future = self._inflight.get(key)
            owner = future is None
            if future is None:
                future = Future()
                self._inflight[key] = future
        if not owner:
            logger.info("Joining in-flight generation for %s (%s)", spec.unit_id, spec_sha[:12])
            return future.result()

        generator = spec.generator
        params = params_for(
            self.config,
            generator.provider,
            model=generator.model,
            temperature=generator.temperature,
            seed=generator.seed,
            max_output_tokens=generator.max_output_tokens,
        )
        try:
            text = self._provider(generator.provider).complete(prompt_text, params)
        except Exception as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(text)
            return text
        finally:
            with self._inflight_lock:
                self._inflight.pop(key, None)

    # ------------------------------------------------------------------
    # Pipeline stages
    # ------------------------------------------------------------------

    def compile_unit(self, unit_id: str, *, force: bool = False) -> CompileResult:
        """Generate (or reuse) a validated candidate checkpoint for one unit.

        Args:
            unit_id: Registered unit identifier.
            force: Skip the cache read and always call the provider.

        Raises:
            ExtractionError, DependencyCycleError, TemplateNotFoundError,
            ProviderError, ValidationError: abort this unit only.
        """
        spec = self.spec_for(unit_id)
        spec_sha = spec_hash(spec)
        prompt = self.renderer.render_spec(spec)

        entry = None if force else self.stores.cache.get(spec_sha, prompt.prompt_sha)
        if entry is not None:
            logger.info("Cache hit for %s (%s)", unit_id, spec_sha[:12])
            raw = entry.response
        else:
            logger.info("Cache %s for %s (%s); calling provider", "bypass" if force else "miss", unit_id, spec_sha[:12])
            raw = self._generate(spec, spec_sha, prompt.text, prompt.prompt_sha)

        clean = validate(raw, spec)
        if entry is None:
            self.stores.cache.put(
                spec_sha,
                prompt.prompt_sha,
                raw,
                provider=spec.generator.provider,
                model=spec.generator.model,
            )

        code_sha = sha256_text(raw)
        h_chk = checkpoint_hash(spec_sha, prompt.prompt_sha, code_sha)
        if not self.stores.checkpoints.exists(unit_id, h_chk):
            meta = CheckpointMeta(
                unit_id=unit_id,
                h_chk=h_chk,
                spec_hash=spec_sha,
                prompt_sha=prompt.prompt_sha,
                code_sha=code_sha,
                tool_version=spec.tool_version,
                provider=spec.generator.provider,
                model=spec.generator.model,
                template_id=prompt.template_id,
                hash_scheme=HASH_SCHEME_VERSION,
                created_at=datetime.now(UTC),
                dependencies=list(spec.dependencies),
            )
            self.stores.checkpoints.write(unit_id, h_chk, clean.code, meta)

        self._last_compiled[unit_id] = h_chk
        return CompileResult(
            unit_id=unit_id,
            spec_hash=spec_sha,
            h_chk=h_chk,
            prompt_sha=prompt.prompt_sha,
            code_sha=code_sha,
            cache_hit=entry is not None,
        )

    def _target_checkpoint(self, unit_id: str, h_chk: str | None) -> str:
        if h_chk is not None:
            return h_chk
        candidate = self._last_compiled.get(unit_id) or self.stores.index.get(unit_id)
        if candidate is None:
            raise CheckpointMissingError(f"nothing compiled or active for {unit_id}", unit_id=unit_id)
        return candidate

    def test_unit(self, unit_id: str, h_chk: str | None = None) -> TestReport:
        """Run the harness against a checkpoint (default: latest compile, else the active one)."""
        declaration = self.registry.get(unit_id)
        target = self._target_checkpoint(unit_id, h_chk)
        checkpoint = self.stores.checkpoints.read(unit_id, target)
        spec = self.extractor.extract(declaration)
        return self.harness.run(checkpoint, spec, namespace=self.namespace_for(declaration))

    def save_unit(self, unit_id: str, h_chk: str | None = None, *, require_tests: bool = True) -> TestReport | None:
        """Promote a candidate checkpoint to active.

        Raises:
            CheckpointMissingError: If the checkpoint does not exist.
            TestsFailedError: If the harness rejects the candidate.
        """
        target = self._target_checkpoint(unit_id, h_chk)
        report: TestReport | None = None
        if require_tests:
            report = self.test_unit(unit_id, target)
            if not report.passed:
                raise TestsFailedError(unit_id, report)
        elif not self.stores.checkpoints.exists(unit_id, target):
            raise CheckpointMissingError(f"no checkpoint {target} for {unit_id}", unit_id=unit_id)
        self.stores.index.activate(unit_id, target)
        return report

    def compile_test_save(self, unit_id: str, *, force: bool = False) -> CompileResult:
        result = self.compile_unit(unit_id, force=force)
        self.save_unit(unit_id, result.h_chk)
        return result

    # ------------------------------------------------------------------
    # Batch and status
    # ------------------------------------------------------------------

    def _batch_one(self, unit_id: str, *, force: bool, save: bool) -> BatchItem:
        try:
            if save:
                result = self.compile_test_save(unit_id, force=force)
            else:
                result = self.compile_unit(unit_id, force=force)
        except SpeclockError as exc:
            logger.warning("Unit %s failed: %s", unit_id, exc)
            return BatchItem(unit_id=unit_id, ok=False, reason=f"{type(exc).__name__}: {exc}")
        except Exception as exc:  # noqa: BLE001 - one unit must not abort the batch.
            logger.exception("Unit %s failed unexpectedly", unit_id)
            return BatchItem(unit_id=unit_id, ok=False, reason=f"{type(exc).__name__}: {exc}")
        return BatchItem(unit_id=unit_id, ok=True, h_chk=result.h_chk)

    def compile_batch(
        self,
        unit_ids: Iterable[str] | None = None,
        *,
        force: bool = False,
        save: bool = False,
        workers: int = 4,
    ) -> BatchReport:
        """Compile many units concurrently and report per unit instead of failing fast."""
        targets = sorted(set(unit_ids)) if unit_ids is not None else self.registry.unit_ids()
        if not targets:
            return BatchReport(items=[])
        with ThreadPoolExecutor(max_workers=max(1, min(workers, len(targets)))) as pool:
            futures = {unit_id: pool.submit(self._batch_one, unit_id, force=force, save=save) for unit_id in targets}
            items = [futures[unit_id].result() for unit_id in targets]
        report = BatchReport(items=items)
        logger.info("Batch finished: %d ok, %d failed", sum(item.ok for item in items), sum(not item.ok for item in items))
        return report

    def status(self, unit_ids: Iterable[str] | None = None) -> list[UnitStatus]:
        """Drift report per unit; reads stores only, never the provider.

        A unit whose spec hash still matches but whose prompt now renders
        differently (an edited template file) is reported as template drift.
        """
        targets = sorted(set(unit_ids)) if unit_ids is not None else self.registry.unit_ids()
        statuses: list[UnitStatus] = []
        for unit_id in targets:
            try:
                spec = self.spec_for(unit_id)
                current = spec_hash(spec)
                active = self.stores.index.get(unit_id)
                if active is None:
                    statuses.append(UnitStatus(unit_id=unit_id, state=UnitState.MISSING, current_hash=current))
                    continue
                meta = self.stores.checkpoints.read_meta(unit_id, active)
                prompt_sha = self.renderer.render_spec(spec).prompt_sha if meta.spec_hash == current else None
            except (SpeclockError, ValueError, OSError) as exc:
                statuses.append(UnitStatus(unit_id=unit_id, state=UnitState.ERROR, reason=f"{type(exc).__name__}: {exc}"))
                continue
            state, reason = UnitState.OK, ""
            if meta.spec_hash != current:
                state = UnitState.DRIFTED
            elif prompt_sha != meta.prompt_sha:
                state = UnitState.TEMPLATE_DRIFTED
                reason = f"prompt {spec.generator.template_id} renders {prompt_sha[:12]}, checkpoint has {meta.prompt_sha[:12]}"
            statuses.append(
                UnitStatus(
                    unit_id=unit_id,
                    state=state,
                    current_hash=current,
                    active_checkpoint=active,
                    stored_hash=meta.spec_hash,
                    reason=reason,
                )
            )
        return statuses

    def check(self) -> bool:
        return all(status.state is UnitState.OK for status in self.status())
