"""
Recursive query decomposition.

The controller decides per query whether to answer it directly or split it
into sub-queries, resolves sub-queries in parallel, and merges their answers
in original order. Nodes live in a QueryTree arena keyed by id.

Resolution rules:
1. Split only when the query scores above the complexity threshold, the node
   depth is below max_depth, the budget allows two more calls and the text
   actually yields two or more parts
2. Once the budget is exhausted, answer directly, never drop a query
3. A failed sub-query leaves a placeholder; a node fails only when all its
   sub-queries fail
4. Only a failure of the root is raised to the caller
"""

import itertools
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Sequence

from .budget import CallBudget
from .decomposer import DecompositionPlan, plan_decomposition
from .errors import ResolutionCancelled, ResolutionError, ResolutionTimeout, RoutingError
from .memory import MemoryStore
from .router import Messages, ModelRouter
from .telemetry import SessionMetrics, TelemetryAggregator
from .token_counter import estimate_tokens
from ..config.loader import SessionConfig

logger = logging.getLogger(__name__)

SUBQUERY_SYSTEM_PROMPT = (
    "You are analyzing meeting data to answer a specific question.\n"
    "Be concise and focus only on information relevant to the question.\n"
    "If the information is not available in the provided context, say so briefly."
)

DIRECT_SYSTEM_PROMPT = (
    "You are a helpful meeting assistant with access to data from multiple meetings.\n"
    "Use the following meeting data to answer questions accurately and comprehensively."
)

CONTEXT_PROMPT = (
    "Context from meetings:\n"
    "{context}\n\n"
    "Question: {query}\n\n"
    "Provide a focused answer based only on the context above."
)

MERGE_SECTION = "{index}. {query}\n{answer}"
MISSING_ANSWER = "[No answer available for this part: {reason}]"


class NodeStatus(Enum):
    """Lifecycle of a query node."""
    PENDING = "pending"
    DECOMPOSED = "decomposed"
    ANSWERED = "answered"
    FAILED = "failed"


@dataclass
class QueryNode:
    """One query or sub-query in a resolution."""
    id: str
    text: str
    depth: int
    parent_id: Optional[str] = None
    status: NodeStatus = NodeStatus.PENDING
    children: List[str] = field(default_factory=list)
    answer: Optional[str] = None
    error: Optional[str] = None
    forced_direct: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in (NodeStatus.ANSWERED, NodeStatus.FAILED)


class QueryTree:
    """Arena of query nodes for a single resolution.

    Parents hold child ids; node ids are q-0, q-1, ... in creation order.
    """

    def __init__(self):
        self._nodes: Dict[str, QueryNode] = {}
        self._ids = itertools.count()
        self._lock = threading.Lock()
        self.root_id: Optional[str] = None

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[QueryNode]:
        return iter(list(self._nodes.values()))

    def get(self, node_id: str) -> QueryNode:
        return self._nodes[node_id]

    @property
    def root(self) -> QueryNode:
        if self.root_id is None:
            raise ValueError("tree has no root")
        return self._nodes[self.root_id]

    def add(self, text: str, depth: int, parent_id: Optional[str] = None) -> QueryNode:
        """Create a node, appending it to its parent's children."""
        if depth < 0:
            raise ValueError("depth cannot be negative")
        with self._lock:
            node = QueryNode(id=f"q-{next(self._ids)}", text=text, depth=depth,
                             parent_id=parent_id)
            self._nodes[node.id] = node
            if parent_id is None:
                if self.root_id is not None:
                    raise ValueError("tree already has a root")
                self.root_id = node.id
            else:
                self._nodes[parent_id].children.append(node.id)
            return node

    def children_of(self, node_id: str) -> List[QueryNode]:
        return [self._nodes[child] for child in self._nodes[node_id].children]

    def mark_decomposed(self, node_id: str) -> None:
        node = self._nodes[node_id]
        if not node.children:
            raise ValueError(f"node {node_id} cannot be decomposed without children")
        node.status = NodeStatus.DECOMPOSED

    def mark_answered(self, node_id: str, answer: str) -> None:
        node = self._nodes[node_id]
        pending = [c.id for c in self.children_of(node_id) if not c.is_terminal]
        if pending:
            raise ValueError(f"node {node_id} has unresolved children: {pending}")
        node.status = NodeStatus.ANSWERED
        node.answer = answer
        node.error = None

    def mark_failed(self, node_id: str, error: str) -> None:
        node = self._nodes[node_id]
        node.status = NodeStatus.FAILED
        node.answer = None
        node.error = error


@dataclass(frozen=True)
class Resolution:
    """Outcome of resolving a query."""
    answer: str
    tree: QueryTree
    metrics: SessionMetrics

    @property
    def root(self) -> QueryNode:
        return self.tree.root


class _Run:
    """Per-resolution state shared by worker threads."""

    def __init__(self, config: SessionConfig, budget: CallBudget, tree: QueryTree,
                 cancel_event: threading.Event):
        self.config = config
        self.budget = budget
        self.tree = tree
        self.cancel_event = cancel_event
        self.slots = threading.BoundedSemaphore(config.max_concurrent)
        self.deadline = None
        if config.resolution_timeout_s is not None:
            self.deadline = time.monotonic() + config.resolution_timeout_s

    def stop_reason(self) -> Optional[str]:
        if self.cancel_event.is_set():
            return "cancelled"
        if self.deadline is not None and time.monotonic() >= self.deadline:
            return "timed out"
        return None


class DecompositionController:
    """Resolves queries by recursive decomposition."""

    def __init__(
        self,
        router: ModelRouter,
        memory: MemoryStore,
        telemetry: TelemetryAggregator,
        config: Optional[SessionConfig] = None,
        scope: Sequence[str] = (),
        decomposer: Callable[[str, int], DecompositionPlan] = plan_decomposition
    ):
        """Initialize the controller.

        Args:
            router: Model router for direct answers
            memory: Memory store supplying context
            telemetry: Aggregator for stage timings
            config: Default session configuration
            scope: Document ids retrieval is restricted to
            decomposer: Function returning a decomposition plan for a query
        """
        self.router = router
        self.memory = memory
        self.telemetry = telemetry
        self.config = config or SessionConfig()
        self.scope = tuple(scope)
        self.decomposer = decomposer
        self._cancel_event = threading.Event()

    def cancel(self) -> None:
        """Stop the running resolution; in-flight calls finish but are discarded."""
        logger.info("Resolution cancelled")
        self._cancel_event.set()

    def resolve(
        self,
        query: str,
        depth: int = 0,
        budget: Optional[int] = None,
        config: Optional[SessionConfig] = None
    ) -> str:
        """Answer a query.

        Args:
            query: Question text
            depth: Depth of the query, 0 for a top-level question
            budget: Model-call budget overriding the session config
            config: Session configuration overriding the default

        Returns:
            Answer text, possibly merged from sub-answers

        Raises:
            ResolutionError: If the query could not be answered
            ResolutionCancelled: If cancel() was called during the resolution
            ResolutionTimeout: If resolution_timeout_s elapsed first
        """
        return self.resolve_tree(query, depth=depth, budget=budget, config=config).answer

    def resolve_tree(
        self,
        query: str,
        depth: int = 0,
        budget: Optional[int] = None,
        config: Optional[SessionConfig] = None
    ) -> Resolution:
        """Answer a query and return the full node tree with metrics."""
        if not query or not query.strip():
            raise ValueError("query is required and cannot be empty")

        config = config or self.config
        self._cancel_event.clear()
        run = _Run(
            config=config,
            budget=CallBudget(budget if budget is not None else config.budget),
            tree=QueryTree(),
            cancel_event=self._cancel_event
        )
        root = run.tree.add(query.strip(), depth)

        with self.telemetry.stage("resolve"):
            self._resolve_node(run, root.id)

        reason = run.stop_reason()
        if reason == "cancelled":
            raise ResolutionCancelled("Resolution was cancelled", node_id=root.id)
        if reason == "timed out" and root.status != NodeStatus.ANSWERED:
            raise ResolutionTimeout(
                f"Resolution exceeded {config.resolution_timeout_s}s", node_id=root.id
            )
        if root.status != NodeStatus.ANSWERED:
            raise ResolutionError(f"Query could not be answered: {root.error}", node_id=root.id)

        return Resolution(answer=root.answer, tree=run.tree, metrics=self.telemetry.snapshot())

    def _resolve_node(self, run: _Run, node_id: str) -> None:
        tree = run.tree
        node = tree.get(node_id)
        config = run.config

        reason = run.stop_reason()
        if reason:
            tree.mark_failed(node_id, reason)
            return

        if not config.rlm_enabled:
            self._answer_direct(run, node)
            return

        with self.telemetry.stage("decompose"):
            plan = self.decomposer(node.text, config.max_sub_queries)

        split = plan.should_split(config.complexity_threshold) and node.depth < config.max_depth
        if split and not run.budget.permits_split():
            node.forced_direct = True
            split = False
            logger.warning("Budget exhausted, answering %s directly", node.id)

        if not split:
            self._answer_direct(run, node)
            return

        for part in plan.parts:
            tree.add(part, node.depth + 1, parent_id=node.id)
        tree.mark_decomposed(node.id)
        logger.info("Split %s (score %d, %s) into %d sub-queries",
                    node.id, plan.score, plan.classification.intent.value, len(node.children))

        workers = min(len(node.children), config.max_concurrent)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [(child, pool.submit(self._resolve_node, run, child))
                       for child in node.children]
            for child, future in futures:
                try:
                    future.result()
                except Exception as e:
                    logger.exception("Sub-query %s failed unexpectedly", child)
                    tree.mark_failed(child, f"{type(e).__name__}: {e}")

        with self.telemetry.stage("merge"):
            self._merge(run, node)

    def _merge(self, run: _Run, node: QueryNode) -> None:
        tree = run.tree
        reason = run.stop_reason()
        if reason:
            tree.mark_failed(node.id, reason)
            return

        children = tree.children_of(node.id)
        if all(child.status == NodeStatus.FAILED for child in children):
            tree.mark_failed(node.id, f"all {len(children)} sub-queries failed")
            return

        sections = []
        for index, child in enumerate(children, start=1):
            if child.status == NodeStatus.ANSWERED:
                answer = child.answer
            else:
                answer = MISSING_ANSWER.format(reason=child.error)
            sections.append(MERGE_SECTION.format(index=index, query=child.text, answer=answer))
        tree.mark_answered(node.id, "\n\n".join(sections))

    def build_payload(self, query: str, context: str, sub_query: bool) -> Messages:
        """Chat messages for a direct answer."""
        system = SUBQUERY_SYSTEM_PROMPT if sub_query else DIRECT_SYSTEM_PROMPT
        if context:
            user = CONTEXT_PROMPT.format(context=context, query=query)
        else:
            user = f"Question: {query}"
        return [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ]

    def _tier_hint(self, config: SessionConfig) -> Optional[int]:
        # Models outside the tier table are dispatched as is
        if self.router.tier_of(config.model) is None:
            return None
        return min(int(config.default_tier), len(self.router.tiers) - 1)

    def _answer_direct(self, run: _Run, node: QueryNode) -> None:
        tree = run.tree
        config = run.config

        try:
            with self.telemetry.stage("retrieve"):
                context = self.memory.retrieve(node.text, self.scope)
        except Exception as e:
            logger.exception("Retrieval failed for %s", node.id)
            tree.mark_failed(node.id, f"retrieval failed: {e}")
            return

        sub_query = node.parent_id is not None
        payload = self.build_payload(node.text, context, sub_query)
        self.telemetry.observe_context(
            config.model, sum(estimate_tokens(m["content"]) for m in payload)
        )
        tier_hint = self._tier_hint(config) if sub_query else None

        with run.slots:
            reason = run.stop_reason()
            if reason:
                tree.mark_failed(node.id, reason)
                return
            run.budget.consume()
            try:
                with self.telemetry.stage("model"):
                    record = self.router.call(config.model, payload, tier_hint=tier_hint,
                                              params=config.model_params())
            except RoutingError as e:
                logger.warning("Query %s failed (%s): %s", node.id, e.kind.value, e)
                tree.mark_failed(node.id, str(e))
                return
            except Exception as e:
                logger.exception("Model call for %s failed unexpectedly", node.id)
                tree.mark_failed(node.id, f"{type(e).__name__}: {e}")
                return

        reason = run.stop_reason()
        if reason:
            logger.warning("Discarding answer for %s, resolution %s", node.id, reason)
            tree.mark_failed(node.id, reason)
            return
        tree.mark_answered(node.id, record.text)
