"""Playbook Execution Engine.

This module runs playbook graphs. A run walks the graph from the trigger
node, executes each node once, folds every result into the context seen by
later nodes and records it in the execution store.

State machine:
    running -> success   traversal finished (individual steps may have failed)
    running -> failed    invalid graph, unresolvable trigger, cancellation or
                         an internal (fatal) error

Step failures are data: a failed HTTP call is recorded on its node and the
run continues along the graph.
"""

import logging
import threading
from collections import deque
from collections.abc import Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple, Union

import requests

from .config import AutomationConfig
from .exceptions import (
    EngineFatalError,
    ExecutionCancelled,
    ExecutionNotFoundError,
    ExecutionStoreError,
    PlaybookNotFoundError,
    TriggerResolutionError,
    ValidationError,
)
from .execution_store import ExecutionStore, get_execution_store
from .executors import StepExecutor, build_executors
from .expressions import ExpressionEvaluator, coerce_bool
from .firewall import FirewallClient, get_firewall
from .graph import Graph, Node, NodeType
from .playbook import (
    Context,
    Execution,
    ExecutionErrorKind,
    ExecutionStatus,
    Playbook,
    StepResult,
    StepStatus,
    TriggerType,
)
from .playbook_store import PlaybookStore, get_playbook_store
from .trigger import TriggerPayload, TriggerResolver, get_incident_provider

logger = logging.getLogger(__name__)

TriggerInput = Union[TriggerPayload, Dict[str, Any], None]


@dataclass
class _ActiveRun:
    cancelled: threading.Event
    future: Optional[Future] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionEngine:
    """Engine for executing automation playbooks.

    Each run executes on a single thread with no intra-run parallelism.
    Different runs may proceed concurrently on the engine's worker pool.

    Attributes:
        playbook_store: Store for playbook definitions
        execution_store: Store for execution records
        executors: Step executor per node type
        trigger_resolver: Builds the initial context of a run
    """

    def __init__(
        self,
        playbook_store: Optional[PlaybookStore] = None,
        execution_store: Optional[ExecutionStore] = None,
        executors: Optional[Dict[NodeType, StepExecutor]] = None,
        evaluator: Optional[ExpressionEvaluator] = None,
        trigger_resolver: Optional[TriggerResolver] = None,
        firewall: Optional[FirewallClient] = None,
        session: Optional[requests.Session] = None,
        config: Optional[AutomationConfig] = None,
    ):
        """Initialize the execution engine.

        Args:
            playbook_store: Store for playbook definitions
            execution_store: Store for execution records
            executors: Step executors keyed by node type (built when omitted)
            evaluator: Expression evaluator shared by the default executors
            trigger_resolver: Trigger resolver (no incident lookup when omitted)
            firewall: block_ip collaborator for the default executors
            session: requests session for the default http_request executor
            config: Engine configuration
        """
        self.config = config or AutomationConfig()
        self.playbook_store = playbook_store or get_playbook_store(self.config.playbook_store_type)
        self.execution_store = execution_store or get_execution_store(self.config.execution_store_type)
        self.evaluator = evaluator or ExpressionEvaluator()
        self.executors = executors or build_executors(
            self.evaluator,
            firewall=firewall,
            session=session,
            config=self.config,
        )
        self.trigger_resolver = trigger_resolver or TriggerResolver()

        self._pool = ThreadPoolExecutor(
            max_workers=self.config.max_workers,
            thread_name_prefix="playbook-run",
        )
        self._active: Dict[str, _ActiveRun] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def execute_playbook(
        self,
        playbook_id: str,
        trigger: TriggerInput = None,
        trigger_type: Optional[TriggerType] = None,
    ) -> Execution:
        """Execute a stored playbook and wait for it to finish.

        Args:
            playbook_id: ID of the playbook to execute
            trigger: ``{incident_id}`` or ``{mock_context}`` payload
            trigger_type: How the run was triggered (default: the playbook's)

        Returns:
            The terminal Execution record

        Raises:
            PlaybookNotFoundError: If the playbook does not exist
            ExecutionStoreError: If the execution record cannot be created
        """
        return self.execute_playbook_from_object(
            self._load_playbook(playbook_id), trigger, trigger_type
        )

    def execute_playbook_from_object(
        self,
        playbook: Playbook,
        trigger: TriggerInput = None,
        trigger_type: Optional[TriggerType] = None,
    ) -> Execution:
        """Execute a playbook object (without loading from store)."""
        playbook = Playbook.from_dict(playbook.to_dict())
        payload = self._payload(trigger)
        execution, run = self._begin(playbook, payload, trigger_type)
        try:
            self._run(playbook, execution, payload, run.cancelled)
        finally:
            with self._lock:
                self._active.pop(execution.id, None)
        return self._require_execution(execution.id)

    def start_execution(
        self,
        playbook_id: str,
        trigger: TriggerInput = None,
        trigger_type: Optional[TriggerType] = None,
    ) -> str:
        """Start a run in the background.

        The playbook definition is snapshotted now; later edits do not affect
        the run.

        Returns:
            Execution ID, immediately. The record is already ``running``.

        Raises:
            PlaybookNotFoundError: If the playbook does not exist
            ExecutionStoreError: If the execution record cannot be created
        """
        playbook = self._load_playbook(playbook_id)
        payload = self._payload(trigger)
        execution, run = self._begin(playbook, payload, trigger_type)

        future = self._pool.submit(self._run, playbook, execution, payload, run.cancelled)
        with self._lock:
            run.future = future
        future.add_done_callback(lambda _: self._forget(execution.id))

        return execution.id

    def wait(self, execution_id: str, timeout: Optional[float] = None) -> Execution:
        """Block until a background run finishes.

        Args:
            execution_id: Execution to wait for
            timeout: Seconds to wait (None waits forever)

        Returns:
            The Execution record (terminal unless it runs on another engine)

        Raises:
            concurrent.futures.TimeoutError: If the run did not finish in time
            ExecutionNotFoundError: If the execution is unknown
        """
        with self._lock:
            run = self._active.get(execution_id)

        if run is not None and run.future is not None and not run.future.cancelled():
            run.future.result(timeout=timeout)

        return self._require_execution(execution_id)

    def cancel_execution(self, execution_id: str) -> bool:
        """Cancel a running execution.

        The record turns ``failed`` with kind ``cancelled`` right away. A step
        that is in flight is allowed to finish, but nothing after it runs.

        Returns:
            True if cancelled, False if the execution was already finished

        Raises:
            ExecutionNotFoundError: If the execution is unknown
        """
        execution = self._require_execution(execution_id)
        if execution.is_complete:
            return False

        with self._lock:
            run = self._active.get(execution_id)
        if run is not None:
            run.cancelled.set()
            if run.future is not None:
                run.future.cancel()

        try:
            self.execution_store.update(execution_id, {
                "status": ExecutionStatus.FAILED,
                "end_time": _utcnow(),
                "error": "Execution cancelled",
                "error_kind": ExecutionErrorKind.CANCELLED,
            })
        except ExecutionStoreError as e:
            logger.info(f"Execution {execution_id} finished before it could be cancelled: {e}")
            return False

        logger.info(f"Cancelled execution {execution_id}")
        return True

    def get_execution(self, execution_id: str) -> Optional[Execution]:
        """Get an execution by ID."""
        return self.execution_store.get(execution_id)

    def list_executions(
        self,
        playbook_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Execution]:
        """List executions, newest first.

        Args:
            playbook_id: Only executions of this playbook
            limit: Maximum results (default 20 per playbook, 100 overall)

        Returns:
            List of Execution objects
        """
        if playbook_id:
            return self.execution_store.list_by_playbook(playbook_id, limit=limit or 20)
        return self.execution_store.list_global(limit=limit or 100)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting runs and optionally wait for in-flight ones."""
        self._pool.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def _load_playbook(self, playbook_id: str) -> Playbook:
        playbook = self.playbook_store.get(playbook_id)
        if playbook is None:
            raise PlaybookNotFoundError(f"Playbook not found: {playbook_id}")
        return playbook

    @staticmethod
    def _payload(trigger: TriggerInput) -> TriggerPayload:
        if isinstance(trigger, TriggerPayload):
            return trigger
        return TriggerPayload.from_dict(trigger)

    def _begin(
        self,
        playbook: Playbook,
        payload: TriggerPayload,
        trigger_type: Optional[TriggerType],
    ) -> Tuple[Execution, _ActiveRun]:
        """Create the execution record and register the run as active."""
        trigger_context_id = payload.incident_id
        if trigger_context_id is None and isinstance(payload.incident, Mapping):
            incident_id = payload.incident.get("id")
            trigger_context_id = str(incident_id) if incident_id is not None else None

        execution = Execution(
            playbook_id=playbook.id,
            status=ExecutionStatus.RUNNING,
            trigger_type=trigger_type or playbook.trigger_type,
            trigger_context_id=trigger_context_id,
        )
        self.execution_store.create(execution)

        run = _ActiveRun(cancelled=threading.Event())
        with self._lock:
            self._active[execution.id] = run

        logger.info(
            f"Starting execution {execution.id} of playbook {playbook.id} "
            f"({execution.trigger_type.value})"
        )
        return execution, run

    def _forget(self, execution_id: str) -> None:
        with self._lock:
            self._active.pop(execution_id, None)

    def _run(
        self,
        playbook: Playbook,
        execution: Execution,
        payload: TriggerPayload,
        cancelled: threading.Event,
    ) -> None:
        """Drive one execution to a terminal status. Never raises."""
        graph = playbook.definition

        try:
            graph.validate()
        except ValidationError as e:
            logger.warning(f"Execution {execution.id}: playbook {playbook.id} is invalid: {e}")
            self._finish(execution.id, str(e), ExecutionErrorKind.VALIDATION)
            return

        try:
            resolved = self.trigger_resolver.resolve(execution.trigger_type, payload)
            self._traverse(graph, execution.id, resolved.context, cancelled)
        except TriggerResolutionError as e:
            logger.warning(f"Execution {execution.id}: trigger could not be resolved: {e}")
            self._finish(execution.id, str(e), ExecutionErrorKind.TRIGGER)
        except ExecutionCancelled as e:
            logger.info(f"Execution {execution.id} stopped: {e}")
            self._finish(execution.id, str(e), ExecutionErrorKind.CANCELLED)
        except Exception as e:
            if cancelled.is_set():
                logger.info(f"Execution {execution.id} stopped after cancellation: {e}")
                return
            logger.exception(f"Execution {execution.id} halted by a fatal error: {e}")
            self._finish(execution.id, f"Internal error: {e}", ExecutionErrorKind.FATAL)
        else:
            self._finish(execution.id)

    def _traverse(
        self,
        graph: Graph,
        execution_id: str,
        ctx: Context,
        cancelled: threading.Event,
    ) -> Context:
        """Walk the graph from the trigger in edge-declaration order.

        Each node runs at most once; reaching it again through a cycle or a
        merge is a no-op. When the walk ends, nodes that never ran are
        recorded as skipped.
        """
        worklist = deque([graph.trigger_node().id])
        visited: Set[str] = set()

        while worklist:
            node_id = worklist.popleft()
            if node_id in visited:
                continue

            if cancelled.is_set():
                raise ExecutionCancelled("Execution cancelled")

            node = graph.get_node(node_id)
            visited.add(node_id)

            result = self._execute_node(node, ctx)
            try:
                self.execution_store.add_step_result(execution_id, node.id, result)
            except ExecutionStoreError:
                if not cancelled.is_set():
                    raise
                logger.warning(
                    f"Execution {execution_id} was cancelled while step {node.id} was running; "
                    f"unrecorded result: {result.status.value} "
                    f"error={result.error!r} output={str(result.output)[:500]}"
                )
                raise ExecutionCancelled("Execution cancelled")
            ctx = ctx.with_step(node.id, result)

            if node.type == NodeType.TRIGGER and result.status == StepStatus.FAILED:
                raise TriggerResolutionError(f"Trigger step failed: {result.error}")

            taken_branch = None
            if node.type == NodeType.CONDITION:
                taken_branch = self._branch_taken(result)
                logger.info(f"Execution {execution_id}: condition {node.id} took the {str(taken_branch).lower()} branch")

            worklist.extend(graph.successors(node.id, taken_branch=taken_branch))

        skipped = {
            node.id: StepResult.skipped(node_type=node.type, label=node.label)
            for node in graph.nodes
            if node.id not in visited
        }
        if skipped:
            self.execution_store.update(execution_id, {"logs": skipped})

        return ctx

    def _execute_node(self, node: Node, ctx: Context) -> StepResult:
        executor = self.executors.get(node.type)
        if executor is None:
            raise EngineFatalError(f"No executor registered for node type {node.type.value}")

        result = executor.run(node, ctx)
        if not isinstance(result, StepResult):
            raise EngineFatalError(
                f"Executor for {node.type.value} returned {type(result).__name__}, not StepResult"
            )

        if result.status == StepStatus.FAILED:
            logger.warning(f"Step {node.id} ({node.type.value}) failed: {result.error}")
        else:
            logger.info(f"Step {node.id} ({node.type.value}) {result.status.value} in {result.duration_ms}ms")
        return result

    @staticmethod
    def _branch_taken(result: StepResult) -> bool:
        if result.status != StepStatus.SUCCESS or not isinstance(result.output, Mapping):
            return False
        return coerce_bool(result.output.get("result"))

    def _finish(
        self,
        execution_id: str,
        error: Optional[str] = None,
        error_kind: Optional[ExecutionErrorKind] = None,
    ) -> None:
        """Record the terminal transition of a run."""
        status = ExecutionStatus.FAILED if error_kind else ExecutionStatus.SUCCESS
        patch: Dict[str, Any] = {"status": status, "end_time": _utcnow()}
        if error_kind:
            patch["error"] = error
            patch["error_kind"] = error_kind

        try:
            self.execution_store.update(execution_id, patch)
        except ExecutionStoreError as e:
            current = self.execution_store.get(execution_id)
            if current is not None and current.is_complete:
                logger.info(
                    f"Execution {execution_id} was already {current.status.value} "
                    f"({current.error_kind.value if current.error_kind else 'no error'})"
                )
                return
            logger.exception(f"Could not record the end of execution {execution_id}: {e}")
            return

        logger.info(f"Execution {execution_id} finished: {status.value}")

    def _require_execution(self, execution_id: str) -> Execution:
        execution = self.execution_store.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Execution not found: {execution_id}")
        return execution


def get_execution_engine(**kwargs) -> ExecutionEngine:
    """Factory function to get an execution engine instance.

    Args:
        **kwargs: Engine collaborators; anything omitted is built from
            ``AutomationConfig.from_environment()``

    Returns:
        ExecutionEngine instance
    """
    config = kwargs.get("config") or AutomationConfig.from_environment()

    trigger_resolver = kwargs.get("trigger_resolver") or TriggerResolver(
        get_incident_provider(
            config.incident_provider_type,
            table_name=config.incident_table,
            region=config.region,
        )
    )

    firewall = kwargs.get("firewall")
    if firewall is None and kwargs.get("executors") is None:
        firewall = get_firewall(
            config.firewall_type,
            ip_set_name=config.waf_ip_set_name,
            ip_set_id=config.waf_ip_set_id,
            scope=config.waf_scope,
            region=config.region,
        )

    return ExecutionEngine(
        playbook_store=kwargs.get("playbook_store") or get_playbook_store(
            config.playbook_store_type,
            base_path=config.playbook_path,
            table_name=config.playbook_table,
            region=config.region,
        ),
        execution_store=kwargs.get("execution_store") or get_execution_store(
            config.execution_store_type,
            table_name=config.execution_table,
            region=config.region,
        ),
        executors=kwargs.get("executors"),
        evaluator=kwargs.get("evaluator"),
        trigger_resolver=trigger_resolver,
        firewall=firewall,
        session=kwargs.get("session"),
        config=config,
    )
