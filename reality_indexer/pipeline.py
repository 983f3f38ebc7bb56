"""
Sync coordinator.

A SyncSession owns the RPC handle, the store, the watermark mirror and the
poller for one endpoint. Phases run under a single lock so a polling tick and
a caller-triggered sync never overlap. Each phase gathers everything from the
chain first and then commits records and the widened watermark in one store
transaction; a phase that fails leaves the watermark where it was.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from reality_indexer.bundles import import_bundle, verify_bundle
from reality_indexer.config import Settings
from reality_indexer.errors import BundleError, ContractNotFound, DecodeFailed, IndexerError
from reality_indexer.extractors.block_time import estimate_block
from reality_indexer.extractors.logs import LogRangeScanner
from reality_indexer.extractors.rpc import EthRpc
from reality_indexer.handlers.dlq import DeadLetterQueue
from reality_indexer.loaders.store import Store
from reality_indexer.models import (
    AnswerEvent,
    ModuleConfig,
    Proposal,
    ProposalStatus,
    QuestionState,
    SyncWatermark,
    TxBundle,
)
from reality_indexer.oracle import claims
from reality_indexer.oracle.state import (
    QuestionStateLoader,
    derive_status,
    filter_proposals,
    load_module_config,
    state_changed,
)
from reality_indexer.transformers.answers import AnswerIndexer
from reality_indexer.transformers.proposals import ProposalDecoder, proposal_filter
from reality_indexer.utils.http import ExhaustedHandler

logger = logging.getLogger(__name__)


class SyncPhase(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    BACKFILLING = "backfilling"
    COVERAGE_EXPANSION = "coverage_expansion"
    ANSWER_CACHE_FILL = "answer_cache_fill"
    INCREMENTAL = "incremental"
    SYNCED = "synced"
    POLLING = "polling"


@dataclass
class SyncResult:
    phase: SyncPhase
    from_block: Optional[int] = None
    to_block: Optional[int] = None
    new_proposals: List[str] = field(default_factory=list)
    updated_states: List[str] = field(default_factory=list)
    answers_indexed: int = 0
    error: Optional[str] = None
    retryable: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def has_updates(self) -> bool:
        return bool(self.new_proposals or self.updated_states)


def coverage_gap(watermark: SyncWatermark, desired_start: int) -> Optional[Tuple[int, int]]:
    """Block range not yet indexed when the lookback window moves back to ``desired_start``."""
    if desired_start >= watermark.earliest_indexed_block:
        return None
    return desired_start, watermark.earliest_indexed_block - 1


class Poller:
    """Runs ``tick`` every ``interval`` seconds on one daemon thread."""

    def __init__(self, tick: Callable[[], Any], name: str = "reality-poller") -> None:
        self.tick = tick
        self.name = name
        self.interval: Optional[float] = None
        self._stop_event: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def armed(self) -> bool:
        return self._thread is not None

    def start(self, interval: float) -> None:
        if interval <= 0:
            raise ValueError("poll interval must be positive")
        self.stop()
        stop_event = threading.Event()
        self.interval = interval
        self._stop_event = stop_event
        self._thread = threading.Thread(
            target=self._run, args=(stop_event, interval), name=self.name, daemon=True
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        thread, stop_event = self._thread, self._stop_event
        self._thread = None
        self._stop_event = None
        if thread is None:
            return
        stop_event.set()
        if thread is not threading.current_thread():
            thread.join(timeout)

    def _run(self, stop_event: threading.Event, interval: float) -> None:
        while not stop_event.wait(interval):
            try:
                self.tick()
            except Exception:
                logger.exception("Polling tick failed")


class SyncSession:
    def __init__(
        self,
        settings: Settings,
        store: Optional[Store] = None,
        rpc: Optional[EthRpc] = None,
        dlq: Optional[DeadLetterQueue] = None,
        on_exhausted: Optional[ExhaustedHandler] = None,
        on_message: Optional[Callable[[str], None]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.store = store if store is not None else Store(settings.db_path)
        self.rpc = rpc if rpc is not None else EthRpc.from_settings(settings, on_exhausted)
        self.dlq = dlq if dlq is not None else DeadLetterQueue(settings.dlq_path)
        self.on_message = on_message
        self.clock = clock

        self.scanner = LogRangeScanner(self.rpc, settings.log_chunk_size)
        self.decoder = ProposalDecoder(self.rpc, settings.module_address)
        self.answers = AnswerIndexer(
            self.rpc,
            self.scanner,
            self.store,
            settings.oracle_address,
            settings.answer_lookback_blocks,
        )
        self.states = QuestionStateLoader(self.rpc, self.store, settings.oracle_address)

        self.phase = SyncPhase.DISCONNECTED
        self.chain_id: Optional[int] = settings.chain_id
        self.module_config: Optional[ModuleConfig] = None
        self._watermark: Optional[SyncWatermark] = None
        self._generation: Optional[int] = None
        self._lock = threading.RLock()
        self._on_update: Optional[Callable[[SyncResult], None]] = None
        self._poller = Poller(self._poll_tick)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _now(self) -> int:
        return int(self.clock())

    def _notify(self, message: str) -> None:
        logger.info(message)
        if self.on_message is not None:
            self.on_message(message)

    def _progress(self, label: str) -> Callable[[int, int], None]:
        def report(percent: int, log_count: int) -> None:
            logger.debug("%s scan %d%% (%d logs)", label, percent, log_count)
            if self.on_message is not None:
                self.on_message(f"Scanning {label}: {percent}% ({log_count} logs)")

        return report

    @property
    def watermark(self) -> Optional[SyncWatermark]:
        generation = self.store.generation()
        if generation != self._generation:
            # The store was reset or replaced underneath us
            self._watermark = self.store.get_watermark()
            self._generation = generation
        return self._watermark

    def invalidate(self) -> None:
        """Drop in-memory mirrors so the next phase re-reads the store."""
        with self._lock:
            self._generation = None
            self._watermark = None
            self.module_config = None

    def _remember(self, watermark: SyncWatermark) -> None:
        self._watermark = watermark
        self._generation = self.store.generation()

    def _require_watermark(self) -> SyncWatermark:
        watermark = self.watermark
        if watermark is None:
            raise IndexerError("Nothing indexed yet; run a backfill first")
        return watermark

    def _settled_phase(self) -> SyncPhase:
        if self._poller.running:
            return SyncPhase.POLLING
        return SyncPhase.SYNCED if self.watermark is not None else SyncPhase.DISCONNECTED

    def _run_phase(self, phase: SyncPhase, step: Callable[[], SyncResult]) -> SyncResult:
        with self._lock:
            self.phase = phase
            try:
                result = step()
            except IndexerError as exc:
                logger.error("%s failed: %s", phase.value, exc.reason)
                self._notify(f"Sync failed: {exc.reason}")
                return SyncResult(phase, error=exc.reason, retryable=exc.retryable)
            finally:
                self.phase = self._settled_phase()
            return result

    def desired_start_block(self) -> int:
        return estimate_block(self.rpc, self.settings.backfill_seconds, self.settings.block_time)

    def _discover(self, from_block: int, to_block: int) -> List[Proposal]:
        logs = self.scanner.scan(
            proposal_filter(self.settings.module_address),
            from_block,
            to_block,
            self._progress("proposals"),
        )
        proposals = []
        for log in logs:
            try:
                proposals.append(self.decoder.decode(log))
            except DecodeFailed as exc:
                logger.warning("Skipping proposal log in %s: %s", log.get("transactionHash"), exc)
                self.dlq.send(
                    {"tx_hash": log.get("transactionHash"), "block": log.get("blockNumber")},
                    exc,
                    {"stage": "proposal_decode"},
                )
        return proposals

    def _commit(
        self,
        proposals: Sequence[Proposal] = (),
        answers: Sequence[AnswerEvent] = (),
        states: Sequence[QuestionState] = (),
        watermark: Optional[SyncWatermark] = None,
    ) -> List[str]:
        with self.store.transaction():
            new_ids = [p.question_id for p in proposals if self.store.put_proposal(p)]
            self.store.upsert_answers(answers)
            for state in states:
                self.store.put_question_state(state)
            if watermark is not None:
                self.store.set_watermark(watermark)
        if watermark is not None:
            self._remember(watermark)
        return new_ids

    # ------------------------------------------------------------------
    # phases
    # ------------------------------------------------------------------

    def connect(self, endpoint: Optional[str] = None) -> List[SyncResult]:
        """
        Validate the endpoint and bring the cache up to date.

        A fresh store is backfilled; an existing one has its coverage widened
        to the configured window, its answer cache completed and its head
        caught up.
        """
        with self._lock:
            self.phase = SyncPhase.CONNECTING
            if endpoint:
                self.rpc.client.set_endpoint(endpoint)
            try:
                self._check_endpoint()
            except IndexerError as exc:
                logger.error("Connect failed: %s", exc.reason)
                self.phase = SyncPhase.DISCONNECTED
                return [SyncResult(SyncPhase.CONNECTING, error=exc.reason, retryable=exc.retryable)]
            self._notify(f"Connected to chain {self.chain_id} via {self.rpc.endpoint}")

            if self.watermark is None:
                return [self.backfill()]
            return [self.expand_coverage(), self.fill_answer_cache(), self.incremental_sync()]

    def _check_endpoint(self) -> None:
        chain_id = self.rpc.chain_id()
        if self.settings.chain_id is not None and chain_id != self.settings.chain_id:
            raise IndexerError(
                f"Endpoint serves chain {chain_id}, expected {self.settings.chain_id}"
            )
        self.chain_id = chain_id
        for label, address in (
            ("module", self.settings.module_address),
            ("oracle", self.settings.oracle_address),
        ):
            code = self.rpc.get_code(address)
            if not code or code in ("0x", "0x0"):
                raise ContractNotFound(address, chain_id, label)

        config = load_module_config(self.rpc, self.settings.module_address)
        if config.oracle and config.oracle.lower() != self.settings.oracle_address.lower():
            logger.warning(
                "Module reports oracle %s but %s is configured", config.oracle, self.settings.oracle_address
            )
        self.module_config = config
        self.store.set_module_config(config)

    def backfill(self) -> SyncResult:
        return self._run_phase(SyncPhase.BACKFILLING, self._backfill)

    def _backfill(self) -> SyncResult:
        head = self.rpc.get_safe_block_number()
        start = min(self.desired_start_block(), head)
        self._notify(f"Backfilling blocks {start}-{head}")

        proposals = self._discover(start, head)
        question_ids = [p.question_id for p in proposals]
        known = set(self.store.question_ids()) | set(question_ids)
        answers = []
        if known:
            answers = self.answers.fetch_range(start, head, known, self._progress("answers"))
        states = self.states.fetch_many(question_ids, self.dlq)

        current = self.watermark
        if current is None:
            watermark = SyncWatermark(head, start, True)
        else:
            # A populated cache only ever widens
            watermark = current.widened(
                last_processed_block=head, earliest_indexed_block=start, answer_cache_ready=True
            )
        new_ids = self._commit(proposals, answers, list(states.values()), watermark)
        return SyncResult(
            SyncPhase.BACKFILLING,
            from_block=start,
            to_block=head,
            new_proposals=new_ids,
            updated_states=list(states),
            answers_indexed=len(answers),
        )

    def expand_coverage(self, desired_start: Optional[int] = None) -> SyncResult:
        return self._run_phase(
            SyncPhase.COVERAGE_EXPANSION, lambda: self._expand_coverage(desired_start)
        )

    def _expand_coverage(self, desired_start: Optional[int]) -> SyncResult:
        watermark = self._require_watermark()
        if desired_start is None:
            desired_start = self.desired_start_block()
        gap = coverage_gap(watermark, desired_start)
        if gap is None:
            return SyncResult(SyncPhase.COVERAGE_EXPANSION)

        from_block, to_block = gap
        self._notify(f"Extending coverage to blocks {from_block}-{to_block}")
        proposals = [p for p in self._discover(from_block, to_block) if not self.store.has_proposal(p.question_id)]
        states = self.states.fetch_many([p.question_id for p in proposals], self.dlq)

        widened = watermark.widened(
            earliest_indexed_block=from_block,
            answer_cache_ready=False if proposals else None,
        )
        new_ids = self._commit(proposals, (), list(states.values()), widened)
        return SyncResult(
            SyncPhase.COVERAGE_EXPANSION,
            from_block=from_block,
            to_block=to_block,
            new_proposals=new_ids,
            updated_states=list(states),
        )

    def fill_answer_cache(self) -> SyncResult:
        return self._run_phase(SyncPhase.ANSWER_CACHE_FILL, self._fill_answer_cache)

    def _fill_answer_cache(self) -> SyncResult:
        watermark = self._require_watermark()
        if watermark.answer_cache_ready:
            return SyncResult(SyncPhase.ANSWER_CACHE_FILL)

        from_block, to_block = watermark.earliest_indexed_block, watermark.last_processed_block
        question_ids = self.store.question_ids()
        answers = []
        if question_ids:
            self._notify(f"Indexing answers for blocks {from_block}-{to_block}")
            answers = self.answers.fetch_range(
                from_block, to_block, question_ids, self._progress("answers")
            )
        self._commit(answers=answers, watermark=watermark.widened(answer_cache_ready=True))
        return SyncResult(
            SyncPhase.ANSWER_CACHE_FILL,
            from_block=from_block,
            to_block=to_block,
            answers_indexed=len(answers),
        )

    def incremental_sync(self) -> SyncResult:
        return self._run_phase(SyncPhase.INCREMENTAL, self._incremental_sync)

    def _incremental_sync(self) -> SyncResult:
        watermark = self._require_watermark()
        head = self.rpc.get_safe_block_number()
        from_block = watermark.last_processed_block + 1
        has_range = from_block <= head

        proposals: List[Proposal] = []
        answers: List[AnswerEvent] = []
        if has_range:
            proposals = self._discover(from_block, head)
            known = set(self.store.question_ids()) | {p.question_id for p in proposals}
            if known:
                answers = self.answers.fetch_range(from_block, head, known)

        refresh = self._refresh_set(proposals)
        previous = {qid: self.store.get_question_state(qid) for qid in refresh}
        states = self.states.fetch_many(refresh, self.dlq)
        changed = [qid for qid, state in states.items() if state_changed(previous.get(qid), state)]

        new_ids = self._commit(
            proposals,
            answers,
            list(states.values()),
            watermark.widened(last_processed_block=head) if has_range else None,
        )
        if changed or new_ids:
            logger.info("Sync found %d new proposals, %d changed states", len(new_ids), len(changed))
        return SyncResult(
            SyncPhase.INCREMENTAL,
            from_block=from_block if has_range else None,
            to_block=head if has_range else None,
            new_proposals=new_ids,
            updated_states=changed,
            answers_indexed=len(answers),
        )

    def _refresh_set(self, new_proposals: Sequence[Proposal]) -> List[str]:
        """Questions whose state may still move: active, never loaded, or just discovered."""
        loaded = {state.question_id: state for state in self.store.list_question_states()}
        ids: List[str] = []
        for question_id in self.store.question_ids():
            state = loaded.get(question_id)
            if state is None or state.is_active:
                ids.append(question_id)
        for proposal in new_proposals:
            if proposal.question_id not in ids:
                ids.append(proposal.question_id)
        return ids

    # ------------------------------------------------------------------
    # polling
    # ------------------------------------------------------------------

    @property
    def polling(self) -> bool:
        return self._poller.running

    def start_polling(
        self,
        interval: Optional[float] = None,
        on_update: Optional[Callable[[SyncResult], None]] = None,
    ) -> None:
        self.stop_polling()
        self._on_update = on_update
        self._poller.start(interval or self.settings.poll_interval_sec)
        with self._lock:
            self.phase = SyncPhase.POLLING
        logger.info("Polling every %ss", self._poller.interval)

    def stop_polling(self, timeout: Optional[float] = 5.0) -> None:
        if not self._poller.armed:
            return
        self._poller.stop(timeout)
        with self._lock:
            self.phase = self._settled_phase()
        logger.info("Polling stopped")

    def _poll_tick(self) -> None:
        result = self.incremental_sync()
        if result.ok and result.has_updates and self._on_update is not None:
            self._on_update(result)

    # ------------------------------------------------------------------
    # cache management
    # ------------------------------------------------------------------

    def reset_cache(self) -> None:
        with self._lock:
            self.store.clear_all()
            self.invalidate()
            self._notify("Cache cleared; next connect runs a full backfill")

    # ------------------------------------------------------------------
    # caller operations
    # ------------------------------------------------------------------

    @property
    def config(self) -> ModuleConfig:
        if self.module_config is None:
            self.module_config = self.store.get_module_config()
        return self.module_config or ModuleConfig()

    def load_question_state(self, question_id: str) -> QuestionState:
        with self._lock:
            return self.states.load(question_id)

    def fetch_answer_history(self, question_id: str) -> List[AnswerEvent]:
        with self._lock:
            return self.answers.index_question(question_id)

    def compute_claimable(self, question_id: str, user: str) -> List[claims.ClaimEntry]:
        history = self.fetch_answer_history(question_id)
        state = self.load_question_state(question_id)
        return claims.compute_claimable(history, state, user, self._now())

    def build_claim_arrays(self, history: Sequence[AnswerEvent]) -> claims.ClaimArrays:
        return claims.build_claim_arrays(history)

    def scan_claimable_bonds(self, user: str, refresh: bool = False) -> List[claims.QuestionClaim]:
        loader = self.fetch_answer_history if refresh else None
        return claims.scan_claimable_bonds(self.store, user, self._now(), loader)

    def import_bundle(self, proposal_id: str, transactions: Sequence[Dict[str, Any]]) -> TxBundle:
        if self.chain_id is None:
            self.chain_id = self.rpc.chain_id()
        bundle = import_bundle(proposal_id, transactions, self.chain_id, self.settings.module_address)
        self.store.put_bundle(bundle)
        return bundle

    def verify_bundle(
        self, bundle: TxBundle, expected_hashes: Optional[Sequence[str]] = None
    ) -> List[str]:
        if expected_hashes is None:
            proposal = self.store.get_proposal_by_proposal_id(bundle.proposal_id)
            if proposal is None or proposal.tx_hashes is None:
                raise BundleError(
                    f"No on-chain transaction hashes known for proposal {bundle.proposal_id}"
                )
            expected_hashes = proposal.tx_hashes
        return verify_bundle(bundle, expected_hashes)

    def proposal_status(self, question_id: str) -> ProposalStatus:
        return derive_status(self.store.get_question_state(question_id), self.config, self._now())

    def list_proposals(self, search: str = "", status: Optional[str] = None) -> List[Proposal]:
        states = {s.question_id: s for s in self.store.list_question_states()}
        return filter_proposals(
            self.store.list_proposals(), states, self.config, search, status, self._now()
        )

    def close(self) -> None:
        # An in-flight tick holds the phase lock until it has committed
        self.stop_polling(timeout=None)
        with self._lock:
            self.store.close()
