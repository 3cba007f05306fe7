"""
Request orchestration: provider selection, invocation, consensus, escalation.

``Orchestrator.execute`` runs one AnalysisRequest end to end:

1. Resolve the tier's candidates from the registry (open circuits skipped).
2. Serve each candidate from the response cache when possible.
3. Invoke the rest in parallel on a per-request thread pool, or as a bounded
   sequential chain, every call bounded by the request deadline.
4. Feed each real invocation outcome back into the provider's circuit breaker.
5. Integrate the successful responses with the consensus engine.
6. Run at most one escalation round when quality thresholds are unmet.

Per-provider failures are folded into the result metadata. Only a shortfall
below the tier minimum (InsufficientProvidersError) or a forbidden
low-confidence result (ConsensusBelowThresholdError) propagate.
"""

from __future__ import annotations

import contextvars
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from wallbounce.config import TierConfig, WallbounceConfig, validate_depth
from wallbounce.core.cache import CacheKey, ResponseCache, make_cache_key
from wallbounce.core.complexity import score_complexity
from wallbounce.core.consensus import ConsensusEngine
from wallbounce.core.context import request_context
from wallbounce.core.errors import (
    CircuitOpenError,
    ConsensusBelowThresholdError,
    InsufficientProvidersError,
    ProviderError,
    ProviderTimeoutError,
    SessionError,
    SessionNotFoundError,
)
from wallbounce.core.events import (
    ConsensusUpdateEvent,
    EscalationStartEvent,
    EventSink,
    ProviderCompleteEvent,
    ProviderStartEvent,
    safe_emit,
)
from wallbounce.core.metrics import (
    CACHE_LOOKUPS,
    CIRCUIT_TRANSITIONS,
    CONSENSUS_AGREEMENT,
    CONSENSUS_CONFIDENCE,
    ESCALATIONS,
    PROVIDER_INVOCATIONS,
    PROVIDER_LATENCY,
    REQUESTS,
    MetricsSink,
    NullMetricsSink,
    create_metrics_sink,
    safe_record,
)
from wallbounce.core.models import (
    AnalysisRequest,
    ConsensusResult,
    ExecutionMode,
    InvocationOutcome,
    ProviderInvocationResult,
    TaskTier,
    successful,
)
from wallbounce.core.prompts import (
    AGGREGATOR_SYSTEM_PROMPT,
    build_aggregator_prompt,
    build_sequential_prompt,
    continuation_context,
    update_summary,
)
from wallbounce.core.providers.base import ProviderDescriptor, ProviderHooks, ProviderRequest
from wallbounce.core.providers.registry import ProviderRegistry
from wallbounce.core.resilience import CircuitState
from wallbounce.core.sessions import SessionStore, SessionTurn, create_session_store

logger = logging.getLogger(__name__)

ANONYMOUS_OWNER = "anonymous"


def _as_task_tier(name: str, default: TaskTier) -> TaskTier:
    try:
        return TaskTier(name)
    except ValueError:
        return default


# =============================================================================
# Per-invocation bookkeeping
# =============================================================================


class _Attempt:
    """
    Ownership of one invocation's outcome.

    Either the worker finishes the attempt or the orchestrator abandons it at
    the deadline; whichever comes first records the outcome. Breaker
    permission is claimed under the same lock, so an abandoned attempt that
    never started leaves no half-open trial dangling.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._closed = False
        self._invoking = False

    def begin(self, acquire: Callable[[], None]) -> bool:
        """Claim breaker permission unless already abandoned. May raise CircuitOpenError."""
        with self._lock:
            if self._closed:
                return False
            acquire()
            self._invoking = True
            return True

    def finish(self) -> bool:
        with self._lock:
            if self._closed:
                return False
            self._closed = True
            return True

    def abandon(self) -> Tuple[bool, bool]:
        """Close the attempt. Returns (was_open, was_invoking)."""
        with self._lock:
            if self._closed:
                return False, self._invoking
            self._closed = True
            return True, self._invoking


@dataclass
class _Job:
    descriptor: ProviderDescriptor
    request: ProviderRequest
    cache_key: Optional[CacheKey]
    step: int = 0
    round: int = 0
    attempt: _Attempt = field(default_factory=_Attempt)

    @property
    def provider_id(self) -> str:
        return self.descriptor.provider_id


@dataclass
class _ChainLink:
    """Output carried from one sequential step to the next."""

    previous: Optional[ProviderInvocationResult] = None
    summary: str = ""


@dataclass
class _RunState:
    """Mutable state of one execute() call. Only the calling thread touches it."""

    request: AnalysisRequest
    deadline: float
    context: Optional[str]
    results: List[ProviderInvocationResult] = field(default_factory=list)
    attempted: Set[str] = field(default_factory=set)
    aggregations: List[ProviderInvocationResult] = field(default_factory=list)

    def successes(self) -> Tuple[ProviderInvocationResult, ...]:
        return successful(self.results)


# =============================================================================
# Orchestrator
# =============================================================================


class Orchestrator:
    """
    Coordinates providers, cache, sessions and consensus for each request.

    Every collaborator is constructor-injected; the orchestrator itself holds
    no per-request state between calls and is safe to share across threads.
    """

    def __init__(
        self,
        config: WallbounceConfig,
        registry: ProviderRegistry,
        *,
        cache: Optional[ResponseCache] = None,
        sessions: Optional[SessionStore] = None,
        engine: Optional[ConsensusEngine] = None,
        events: Optional[EventSink] = None,
        metrics: Optional[MetricsSink] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.registry = registry
        self.cache = cache
        self.sessions = sessions
        self.engine = engine or ConsensusEngine(config.consensus)
        self.events = events
        self.metrics: MetricsSink = metrics or NullMetricsSink()
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        config: WallbounceConfig,
        *,
        dependencies: Optional[Mapping[str, Dict[str, object]]] = None,
        hooks: Optional[ProviderHooks] = None,
        events: Optional[EventSink] = None,
        metrics: Optional[MetricsSink] = None,
        redis_client: Any = None,
        start_sweeper: bool = True,
    ) -> "Orchestrator":
        """Wire registry, cache, session store and metrics from configuration."""
        metrics = metrics or create_metrics_sink(config.observability)

        def _on_transition(name: str, old: CircuitState, new: CircuitState) -> None:
            safe_record(
                metrics,
                "increment",
                CIRCUIT_TRANSITIONS,
                {"provider": name, "from_state": old.value, "to_state": new.value},
            )

        registry = ProviderRegistry.from_config(
            config,
            hooks=hooks,
            dependencies=dependencies,
            on_transition=_on_transition,
        )
        cache = ResponseCache.from_config(config.cache) if config.cache.enabled else None
        if cache is not None and start_sweeper:
            cache.start_sweeper(config.cache.sweep_interval)
        sessions = (
            create_session_store(config.sessions, redis_client=redis_client)
            if config.sessions.enabled
            else None
        )
        return cls(
            config,
            registry,
            cache=cache,
            sessions=sessions,
            events=events,
            metrics=metrics,
        )

    def close(self) -> None:
        if self.cache is not None:
            self.cache.stop_sweeper()

    def __enter__(self) -> "Orchestrator":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    def execute(self, request: AnalysisRequest) -> ConsensusResult:
        """Run ``request`` and return its integrated, quality-scored answer.

        Raises:
            InsufficientProvidersError: Fewer successes than the tier minimum
            ConsensusBelowThresholdError: Thresholds unmet after escalation and
                the tier forbids low-confidence results
            SessionError: The named session cannot be opened for this owner
        """
        started = time.perf_counter()
        tier = self.config.tier(request.tier.value)
        deadline = request.deadline
        if deadline is None:
            deadline = self._clock() + self.config.orchestrator.default_timeout

        with request_context(correlation_id=request.request_id, owner=request.owner):
            logger.info(
                "Executing request: tier=%s mode=%s session=%s",
                tier.name,
                request.mode.value,
                request.session_id or "-",
            )
            try:
                continuation = self._open_session(request)
                state = _RunState(request=request, deadline=deadline, context=continuation)
                if request.mode is ExecutionMode.SEQUENTIAL:
                    result = self._execute_sequential(state, tier)
                else:
                    result = self._execute_parallel(state, tier)
            except InsufficientProvidersError:
                safe_record(self.metrics, "increment", REQUESTS, {"tier": tier.name, "status": "insufficient"})
                raise

            result = replace(
                result,
                mode=request.mode,
                request_id=request.request_id,
                session_id=request.session_id,
                duration_ms=(time.perf_counter() - started) * 1000,
            )
            safe_record(self.metrics, "observe", CONSENSUS_CONFIDENCE, result.confidence)
            safe_record(self.metrics, "observe", CONSENSUS_AGREEMENT, result.agreement)

            final_tier = self.config.tier(result.tier.value) if result.tier else tier
            if not result.thresholds_met and not final_tier.allow_low_confidence:
                safe_record(
                    self.metrics, "increment", REQUESTS, {"tier": tier.name, "status": "below_threshold"}
                )
                raise ConsensusBelowThresholdError(
                    f"Consensus below threshold for tier '{final_tier.name}' "
                    f"(confidence={result.confidence:.3f}, agreement={result.agreement:.3f})",
                    result=result,
                )

            self._append_turn(request, result)
            safe_record(self.metrics, "increment", REQUESTS, {"tier": tier.name, "status": "success"})
            logger.info(
                "Request complete: providers=%s confidence=%.3f agreement=%.3f escalated=%s",
                ",".join(result.providers_used),
                result.confidence,
                result.agreement,
                result.escalated,
            )
            return result

    # -------------------------------------------------------------------------
    # Parallel mode
    # -------------------------------------------------------------------------

    def _execute_parallel(self, state: _RunState, tier: TierConfig) -> ConsensusResult:
        request = state.request
        candidates = self._resolve(state, tier.name)
        self._run_round(state, candidates[: tier.min_providers], round_no=0)
        self._fill_shortfall(state, tier)
        self._require_minimum(state, tier.min_providers)

        consensus = self._integrate(state, round_no=0)
        final_tier = tier
        escalation_rounds = 0

        if not consensus.thresholds_met and tier.escalate_to is not None:
            target = self.config.tier(tier.escalate_to)
            wanted = target.max_providers - len(state.successes())
            extra = self._resolve(state, target.name, include_fallback=True)[: max(0, wanted)]
            if extra:
                self._announce_escalation(state, tier, target, consensus, extra)
                self._run_round(state, extra, round_no=1)
                escalation_rounds = 1
                final_tier = target
                consensus = self._integrate(state, round_no=1)
            else:
                logger.info("Thresholds unmet but no further providers available for tier %s", target.name)

        aggregator = self._run_aggregator(state, round_no=escalation_rounds)
        if aggregator is not None:
            consensus = self._integrate(state, round_no=escalation_rounds, aggregator=aggregator)

        return replace(
            consensus,
            escalated=consensus.escalated or escalation_rounds > 0,
            escalation_rounds=escalation_rounds,
            tier=_as_task_tier(final_tier.name, request.tier),
            invocations=tuple(state.results + state.aggregations),
        )

    def _announce_escalation(
        self,
        state: _RunState,
        tier: TierConfig,
        target: TierConfig,
        consensus: ConsensusResult,
        extra: Sequence[ProviderDescriptor],
    ) -> None:
        reason = f"confidence={consensus.confidence:.3f}, agreement={consensus.agreement:.3f}"
        logger.info(
            "Escalating %s -> %s (%s); adding %s",
            tier.name,
            target.name,
            reason,
            ",".join(d.provider_id for d in extra),
        )
        safe_emit(
            self.events,
            EscalationStartEvent(
                request_id=state.request.request_id,
                from_tier=tier.name,
                to_tier=target.name,
                reason=reason,
            ),
        )
        safe_record(self.metrics, "increment", ESCALATIONS, {"tier": tier.name})

    def _fill_shortfall(self, state: _RunState, tier: TierConfig) -> None:
        """Invoke unused fallback providers one at a time until the minimum is met."""
        if not self.config.orchestrator.fallback_on_shortfall:
            return
        while len(state.successes()) < tier.min_providers:
            fallbacks = [
                descriptor
                for descriptor in self._resolve(state, tier.name, include_fallback=True)
                if descriptor.fallback
            ]
            if not fallbacks:
                return
            logger.info("Below minimum for tier %s; trying fallback %s", tier.name, fallbacks[0].provider_id)
            self._run_round(state, fallbacks[:1], round_no=0)

    # -------------------------------------------------------------------------
    # Sequential mode
    # -------------------------------------------------------------------------

    def _execute_sequential(self, state: _RunState, tier: TierConfig) -> ConsensusResult:
        request = state.request
        depth = validate_depth(request.depth if request.depth is not None else self.config.orchestrator.sequential_depth)
        chain = self._resolve(state, tier.name)
        required = min(tier.min_providers, depth)
        link = _ChainLink()
        failed: Set[str] = set()
        cursor = 0

        for step in range(1, depth + 1):
            # Cycle through the chain in priority order, skipping providers that failed.
            rotation = chain[cursor:] + chain[:cursor]
            descriptor = next((d for d in rotation if d.provider_id not in failed), None)
            if descriptor is None:
                logger.warning("Sequential chain ran out of providers at step %d/%d", step, depth)
                break
            cursor = (chain.index(descriptor) + 1) % len(chain)
            if not self._run_chain_step(state, descriptor, link, step=step, depth=depth, round_no=0):
                failed.add(descriptor.provider_id)

        self._require_minimum(state, required)
        consensus = self._integrate_chain(state, round_no=0)
        final_tier = tier
        escalation_rounds = 0

        if not consensus.thresholds_met and tier.escalate_to is not None:
            target = self.config.tier(tier.escalate_to)
            contributors = {result.provider_id for result in state.successes()}
            wanted = target.max_providers - len(contributors)
            extra = self._resolve(state, target.name, include_fallback=True)[: max(0, wanted)]
            if extra:
                self._announce_escalation(state, tier, target, consensus, extra)
                done = len(state.results)
                total = done + len(extra)
                for offset, descriptor in enumerate(extra, start=1):
                    self._run_chain_step(state, descriptor, link, step=done + offset, depth=total, round_no=1)
                escalation_rounds = 1
                final_tier = target
                consensus = self._integrate_chain(state, round_no=1)
            else:
                logger.info("Thresholds unmet but no further providers available for tier %s", target.name)

        aggregator = self._run_aggregator(state, round_no=escalation_rounds, depth=depth)
        if aggregator is not None:
            consensus = self._integrate_chain(state, round_no=escalation_rounds, aggregator=aggregator)

        return replace(
            consensus,
            escalated=consensus.escalated or escalation_rounds > 0,
            escalation_rounds=escalation_rounds,
            tier=_as_task_tier(final_tier.name, request.tier),
            invocations=tuple(state.results + state.aggregations),
        )

    def _run_chain_step(
        self,
        state: _RunState,
        descriptor: ProviderDescriptor,
        link: _ChainLink,
        *,
        step: int,
        depth: int,
        round_no: int,
    ) -> bool:
        """Invoke one chain step on top of the previous output. Returns True on success."""
        prompt = build_sequential_prompt(
            state.request.prompt, step=step, depth=depth, previous=link.previous, summary=link.summary
        )
        job = self._make_job(state, descriptor, prompt, step=step, round_no=round_no)
        result = self._run_jobs(state, [job])[0]
        state.results.append(result)
        state.attempted.add(descriptor.provider_id)
        if not result.succeeded:
            return False
        link.previous = result
        link.summary = update_summary(link.summary, descriptor.provider_id, result.text, step)
        return True

    def _integrate_chain(
        self,
        state: _RunState,
        *,
        round_no: int,
        aggregator: Optional[ProviderInvocationResult] = None,
    ) -> ConsensusResult:
        """Integrate chain output; the latest successful step is the surface."""
        consensus = self.engine.integrate(
            state.successes(),
            descriptors=self._descriptor_map(),
            aggregator=aggregator,
            surface=state.successes()[-1],
        )
        self._emit_consensus(state, consensus, round_no=round_no)
        return consensus

    # -------------------------------------------------------------------------
    # Aggregation
    # -------------------------------------------------------------------------

    def _select_aggregator(self, prompt: str) -> Optional[str]:
        settings = self.config.aggregation
        if not settings.enabled:
            return None
        score = score_complexity(prompt)
        if score.total >= settings.complexity_threshold and settings.complex_provider:
            chosen = settings.complex_provider
        else:
            chosen = settings.default_provider
        logger.info("Prompt complexity %s -> aggregator %s", score.to_dict(), chosen or "-")
        if chosen is None:
            return None
        if chosen not in self.registry:
            logger.warning("Aggregator provider '%s' is not configured; using weighted pick", chosen)
            return None
        return chosen

    def _run_aggregator(
        self, state: _RunState, *, round_no: int, depth: Optional[int] = None
    ) -> Optional[ProviderInvocationResult]:
        provider_id = self._select_aggregator(state.request.prompt)
        if provider_id is None:
            return None
        prompt = build_aggregator_prompt(
            state.request.prompt, state.successes(), tier=state.request.tier, depth=depth
        )
        job = self._make_job(
            state,
            self.registry.descriptor(provider_id),
            prompt,
            round_no=round_no,
            system_prompt=AGGREGATOR_SYSTEM_PROMPT,
            with_context=False,
        )
        result = self._run_jobs(state, [job])[0]
        state.aggregations.append(result)
        if not result.succeeded:
            logger.warning(
                "Aggregator %s failed (%s); falling back to weighted pick", provider_id, result.outcome.value
            )
            return None
        return result

    # -------------------------------------------------------------------------
    # Rounds and invocation
    # -------------------------------------------------------------------------

    def _resolve(self, state: _RunState, tier_name: str, *, include_fallback: bool = False) -> List[ProviderDescriptor]:
        request = state.request
        candidates = self.registry.resolve(
            tier_name,
            invocation_paths=request.invocation_paths,
            allow_list=request.providers,
            include_fallback=include_fallback,
            exclude=state.attempted,
        )
        logger.debug("Resolved candidates for %s: %s", tier_name, [d.provider_id for d in candidates])
        return candidates

    def _run_round(self, state: _RunState, descriptors: Sequence[ProviderDescriptor], *, round_no: int) -> None:
        if not descriptors:
            return
        jobs = [self._make_job(state, d, state.request.prompt, round_no=round_no) for d in descriptors]
        state.attempted.update(job.provider_id for job in jobs)
        state.results.extend(self._run_jobs(state, jobs))

    def _make_job(
        self,
        state: _RunState,
        descriptor: ProviderDescriptor,
        prompt: str,
        *,
        step: int = 0,
        round_no: int = 0,
        system_prompt: Optional[str] = None,
        with_context: bool = True,
    ) -> _Job:
        request = state.request
        provider_request = ProviderRequest(
            prompt=prompt,
            system_prompt=system_prompt if system_prompt is not None else request.system_prompt,
            context=state.context if with_context else None,
            timeout=(
                self.config.orchestrator.default_timeout if descriptor.timeout is None else descriptor.timeout
            ),
            temperature=request.temperature,
            max_tokens=request.max_tokens,
            metadata={"request_id": request.request_id, "step": step, "round": round_no},
        )
        cache_key = None
        if self.cache is not None:
            params = dict(
                request.parameters(),
                system_prompt=provider_request.system_prompt,
                model=descriptor.model,
            )
            cache_key = make_cache_key(descriptor.provider_id, provider_request.full_prompt(), params)
        return _Job(descriptor=descriptor, request=provider_request, cache_key=cache_key, step=step, round=round_no)

    def _run_jobs(self, state: _RunState, jobs: Sequence[_Job]) -> List[ProviderInvocationResult]:
        """Serve jobs from cache or invoke them concurrently; results keep job order."""
        results: Dict[int, ProviderInvocationResult] = {}
        pending: List[Tuple[int, _Job]] = []

        for index, job in enumerate(jobs):
            cached = self._from_cache(state, job)
            if cached is not None:
                results[index] = cached
            else:
                pending.append((index, job))

        remaining = state.deadline - self._clock()
        if pending and remaining <= 0:
            for index, job in pending:
                results[index] = self._finalize(
                    state,
                    job,
                    self._result(job, InvocationOutcome.TIMEOUT, error="Request deadline reached before invocation"),
                )
            pending = []

        if pending:
            workers = min(len(pending), self.config.orchestrator.fan_out_cap)
            executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="wallbounce-provider")
            futures: Dict[Future, Tuple[int, _Job]] = {}
            try:
                for index, job in pending:
                    # Each task needs its own context copy; a Context cannot be entered twice at once.
                    ctx = contextvars.copy_context()
                    future = executor.submit(ctx.run, self._invoke, state, job)
                    futures[future] = (index, job)

                done, not_done = wait(futures, timeout=max(0.0, state.deadline - self._clock()))
                for future in done:
                    index, job = futures[future]
                    try:
                        results[index] = future.result()
                    except Exception as exc:
                        logger.exception("Provider task for %s crashed", job.provider_id)
                        results[index] = self._complete_abandoned(state, job, f"{type(exc).__name__}: {exc}")
                for future in not_done:
                    index, job = futures[future]
                    future.cancel()
                    results[index] = self._complete_abandoned(state, job, "Request deadline exceeded")
            finally:
                # Outstanding calls release their resources in the background.
                executor.shutdown(wait=False, cancel_futures=True)

        return [results[index] for index in range(len(jobs))]

    def _from_cache(self, state: _RunState, job: _Job) -> Optional[ProviderInvocationResult]:
        if self.cache is None or job.cache_key is None:
            return None
        entry = self.cache.get(job.cache_key)
        safe_record(self.metrics, "increment", CACHE_LOOKUPS, {"result": "hit" if entry else "miss"})
        if entry is None:
            return None
        logger.debug("Cache hit for provider %s", job.provider_id)
        result = ProviderInvocationResult(
            provider_id=job.provider_id,
            outcome=InvocationOutcome.SUCCESS,
            text=entry.text,
            latency_ms=0.0,
            tokens=entry.tokens,
            cost_estimate=0.0,
            timestamp=self._clock(),
            model=entry.model,
            cache_hit=True,
            truncated=entry.truncated,
            step=job.step,
            round=job.round,
        )
        safe_emit(
            self.events,
            ProviderStartEvent(request_id=state.request.request_id, provider_id=job.provider_id, step=job.step, round=job.round),
        )
        return self._finalize(state, job, result)

    def _invoke(self, state: _RunState, job: _Job) -> ProviderInvocationResult:
        """Worker-thread body for one provider call."""
        provider_id = job.provider_id
        try:
            if not job.attempt.begin(lambda: self.registry.acquire(provider_id)):
                return self._result(job, InvocationOutcome.TIMEOUT, error="Request deadline exceeded")
        except CircuitOpenError as exc:
            logger.debug("Skipping %s: %s", provider_id, exc)
            result = self._result(job, InvocationOutcome.CIRCUIT_OPEN, error=str(exc))
            job.attempt.finish()
            return self._finalize(state, job, result)

        safe_emit(
            self.events,
            ProviderStartEvent(request_id=state.request.request_id, provider_id=provider_id, step=job.step, round=job.round),
        )
        logger.debug("Invoking provider %s (step=%d round=%d)", provider_id, job.step, job.round)
        started = time.perf_counter()
        remaining = max(0.0, state.deadline - self._clock())
        timeout = remaining if job.request.timeout is None else min(job.request.timeout, remaining)
        request = replace(job.request, timeout=timeout)

        try:
            with self.registry.slot(provider_id, timeout=remaining):
                provider_result = self.registry.adapter(provider_id).generate(request)
        except ProviderTimeoutError as exc:
            outcome, text, error, provider_result = InvocationOutcome.TIMEOUT, "", str(exc), None
        except ProviderError as exc:
            outcome, text, error, provider_result = InvocationOutcome.ERROR, "", str(exc), None
        else:
            text = provider_result.content
            if text.strip():
                outcome, error = InvocationOutcome.SUCCESS, None
            else:
                outcome, error = InvocationOutcome.ERROR, "Provider returned an empty response"

        latency_ms = (time.perf_counter() - started) * 1000
        if provider_result is not None and provider_result.duration_ms is not None:
            latency_ms = provider_result.duration_ms
        tokens = provider_result.tokens if provider_result is not None else None
        result = self._result(
            job,
            outcome,
            text=text,
            error=error,
            latency_ms=latency_ms,
            model=provider_result.model_used if provider_result is not None else job.descriptor.model,
            truncated=provider_result.truncated if provider_result is not None else False,
            tokens=tokens,
        )

        if not job.attempt.finish():
            # Abandoned at the deadline; the orchestrator already recorded a timeout.
            logger.debug("Late result from %s discarded", provider_id)
            return result

        self.registry.record_outcome(provider_id, result.succeeded)
        if outcome is InvocationOutcome.SUCCESS:
            logger.debug("Provider %s completed in %.0fms", provider_id, latency_ms)
            if self.cache is not None and job.cache_key is not None:
                try:
                    self.cache.store(
                        job.cache_key, text, model=result.model, tokens=result.tokens, truncated=result.truncated
                    )
                except OSError as exc:
                    logger.warning("Failed to cache response from %s: %s", provider_id, exc)
        else:
            logger.warning("Provider %s failed (%s): %s", provider_id, outcome.value, error)
        safe_record(self.metrics, "observe", PROVIDER_LATENCY, latency_ms / 1000.0, {"provider": provider_id})
        return self._finalize(state, job, result)

    def _complete_abandoned(self, state: _RunState, job: _Job, reason: str) -> ProviderInvocationResult:
        """Record a timeout for a job still outstanding at the deadline."""
        was_open, was_invoking = job.attempt.abandon()
        if was_open and was_invoking:
            self.registry.record_outcome(job.provider_id, False)
        logger.warning("Provider %s timed out: %s", job.provider_id, reason)
        return self._finalize(state, job, self._result(job, InvocationOutcome.TIMEOUT, error=reason))

    def _result(
        self,
        job: _Job,
        outcome: InvocationOutcome,
        *,
        text: str = "",
        error: Optional[str] = None,
        latency_ms: float = 0.0,
        model: Optional[str] = None,
        truncated: bool = False,
        tokens: Any = None,
    ) -> ProviderInvocationResult:
        fields: Dict[str, Any] = {}
        if tokens is not None:
            fields["tokens"] = tokens
            fields["cost_estimate"] = job.descriptor.estimate_cost(tokens)
        return ProviderInvocationResult(
            provider_id=job.provider_id,
            outcome=outcome,
            text=text,
            latency_ms=round(latency_ms, 2),
            timestamp=self._clock(),
            model=model or job.descriptor.model,
            error=error,
            truncated=truncated,
            step=job.step,
            round=job.round,
            **fields,
        )

    def _finalize(self, state: _RunState, job: _Job, result: ProviderInvocationResult) -> ProviderInvocationResult:
        safe_record(
            self.metrics,
            "increment",
            PROVIDER_INVOCATIONS,
            {"provider": result.provider_id, "outcome": "cache_hit" if result.cache_hit else result.outcome.value},
        )
        safe_emit(
            self.events,
            ProviderCompleteEvent(
                request_id=state.request.request_id,
                provider_id=result.provider_id,
                outcome=result.outcome.value,
                latency_ms=result.latency_ms,
                cache_hit=result.cache_hit,
                error=result.error,
                step=job.step,
                round=job.round,
            ),
        )
        return result

    # -------------------------------------------------------------------------
    # Consensus helpers
    # -------------------------------------------------------------------------

    def _descriptor_map(self) -> Dict[str, ProviderDescriptor]:
        return {descriptor.provider_id: descriptor for descriptor in self.registry.descriptors()}

    def _integrate(
        self,
        state: _RunState,
        *,
        round_no: int,
        aggregator: Optional[ProviderInvocationResult] = None,
    ) -> ConsensusResult:
        consensus = self.engine.integrate(
            state.successes(), descriptors=self._descriptor_map(), aggregator=aggregator
        )
        self._emit_consensus(state, consensus, round_no=round_no)
        return consensus

    def _emit_consensus(self, state: _RunState, consensus: ConsensusResult, *, round_no: int) -> None:
        safe_emit(
            self.events,
            ConsensusUpdateEvent(
                request_id=state.request.request_id,
                confidence=consensus.confidence,
                agreement=consensus.agreement,
                providers=list(consensus.providers_used),
                escalated=consensus.escalated,
                round=round_no,
            ),
        )

    def _require_minimum(self, state: _RunState, required: int) -> None:
        succeeded = len(state.successes())
        if succeeded >= required:
            return
        outcomes = ", ".join(f"{r.provider_id}={r.outcome.value}" for r in state.results) or "none attempted"
        logger.error("Insufficient providers: %d of %d required succeeded (%s)", succeeded, required, outcomes)
        raise InsufficientProvidersError(
            f"Only {succeeded} of {required} required providers succeeded ({outcomes})",
            required=required,
            succeeded=succeeded,
            results=state.results,
        )

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    def _open_session(self, request: AnalysisRequest) -> Optional[str]:
        """Load (or create) the request's session and render continuation context."""
        if request.session_id is None or self.sessions is None:
            return None
        owner = request.owner or ANONYMOUS_OWNER
        record = self.sessions.get_or_create(request.session_id, owner)
        if request.owner is not None and record.owner != request.owner:
            raise SessionError(f"Session '{request.session_id}' belongs to another owner")
        return continuation_context(record.recent_turns(self.config.sessions.context_turns))

    def _append_turn(self, request: AnalysisRequest, result: ConsensusResult) -> None:
        if request.session_id is None or self.sessions is None:
            return
        turn = SessionTurn(
            request_text=request.prompt,
            answer=result.answer,
            request_id=request.request_id,
            confidence=result.confidence,
            agreement=result.agreement,
            providers=result.providers_used,
        )
        try:
            self.sessions.append(request.session_id, turn)
        except SessionNotFoundError:
            logger.warning("Session %s expired before the turn could be appended", request.session_id)
