"""Agent graph extraction.

Extraction is a pluggable strategy: anything implementing ``GraphExtractor``
turns a sheet's source files into an ``AgentGraph``.  The default
``StaticAgentExtractor`` parses Python sources with :mod:`ast` and recognises
the common agent-framework idioms:

- CrewAI style: ``x = Agent(role=..., llm=...)``, ``t = Task(agent=x,
  context=[...])``, ``Crew(agents=[...], tasks=[...])``, including
  ``@agent``/``@task`` factory methods that ``return Agent(...)``.
- AutoGen style: ``a = AssistantAgent("name", llm_config={...})``,
  ``a.initiate_chat(b)``, ``a.send(msg, b)``, ``GroupChat(agents=[...])``.
- LangGraph style: ``g = StateGraph(...)``, ``g.add_node("n", fn)``,
  ``g.add_edge("a", "b")``, ``g.add_conditional_edges("a", fn, {...})``.

The result is canonical (sorted, de-duplicated), so identical sources always
produce structurally equal graphs.
"""

from __future__ import annotations

import ast
import hashlib
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from graphsheet.exec_runtime.models.enums import EdgeKind, NodeKind, Phase
from graphsheet.exec_runtime.models.graph import AgentGraph, GraphEdge, GraphNode
from graphsheet.exec_runtime.models.sheet import SheetFile

logger = logging.getLogger(__name__)

START_NODE = "__start__"
END_NODE = "__end__"

_MODEL_KEYWORDS = ("llm", "model", "model_name", "model_client", "model_id")
_LABEL_MAX = 60
_RESOLVE_DEPTH = 5


class ExtractionError(RuntimeError):
    """Extraction failed; the previously stored graph stays in place."""

    def __init__(self, message: str, *, phase: Phase = Phase.EXTRACTION) -> None:
        super().__init__(message)
        self.phase = phase


class GraphExtractor(Protocol):
    """Strategy turning sheet sources into an agent graph."""

    def extract(self, files: Sequence[SheetFile]) -> AgentGraph:
        """Raise ``ExtractionError`` when the source cannot be analysed."""
        ...


def source_digest(files: Sequence[SheetFile]) -> str:
    """Stable digest of a sheet's files (name + code), independent of order."""
    h = hashlib.sha256()
    for f in sorted(files, key=lambda f: f.filename):
        h.update(f.filename.encode("utf-8"))
        h.update(b"\0")
        h.update(f.code.encode("utf-8"))
        h.update(b"\0")
    return h.hexdigest()


# ---------------------------------------------------------------------------
# Graph accumulator
# ---------------------------------------------------------------------------


class _GraphBuilder:
    def __init__(self) -> None:
        self.nodes: dict[str, GraphNode] = {}
        self.edges: set[tuple[str, str, EdgeKind, str | None]] = set()

    def add_node(self, node: GraphNode) -> None:
        existing = self.nodes.get(node.id)
        if existing is not None and existing.kind != node.kind:
            msg = (
                f"'{node.id}' is defined as both {existing.kind} ({existing.source}) "
                f"and {node.kind} ({node.source})"
            )
            raise ExtractionError(msg)
        # Redefinition with the same kind: the later one wins.
        self.nodes[node.id] = node

    def add_edge(self, source: str | None, target: str | None, kind: EdgeKind, label: str | None = None) -> None:
        if source and target:
            self.edges.add((source, target, kind, label))

    def build(self) -> AgentGraph:
        dropped = [e for e in self.edges if e[0] not in self.nodes or e[1] not in self.nodes]
        if dropped:
            logger.debug("Dropping %d edges with unresolved endpoints", len(dropped))
        edges = sorted(
            (e for e in self.edges if e[0] in self.nodes and e[1] in self.nodes),
            key=lambda e: (e[0], e[1], e[2], e[3] or ""),
        )
        return AgentGraph(
            nodes=[self.nodes[k] for k in sorted(self.nodes)],
            edges=[GraphEdge(source=s, target=t, kind=k, label=lbl) for s, t, k, lbl in edges],
        )


# ---------------------------------------------------------------------------
# AST helpers
# ---------------------------------------------------------------------------


def _callee_name(func: ast.expr) -> str | None:
    if isinstance(func, ast.Name):
        return func.id
    if isinstance(func, ast.Attribute):
        return func.attr
    return None


def _ref(expr: ast.expr | None) -> str | None:
    """Identifier an expression refers to: ``x``, ``self.x`` or ``self.x()``."""
    if isinstance(expr, ast.Name):
        return expr.id
    if isinstance(expr, ast.Attribute):
        return expr.attr
    if isinstance(expr, ast.Call) and not expr.args and not expr.keywords:
        return _callee_name(expr.func)
    return None


def _str_const(expr: ast.expr | None) -> str | None:
    if isinstance(expr, ast.Constant) and isinstance(expr.value, str):
        return expr.value
    return None


def _keyword(call: ast.Call, name: str) -> ast.expr | None:
    for kw in call.keywords:
        if kw.arg == name:
            return kw.value
    return None


def _elements(expr: ast.expr | None) -> list[ast.expr]:
    if isinstance(expr, (ast.List, ast.Tuple, ast.Set)):
        return list(expr.elts)
    return []


@dataclass
class _Definition:
    ident: str
    call: ast.Call
    kind: NodeKind
    lineno: int
    col: int


# ---------------------------------------------------------------------------
# Per-module scan
# ---------------------------------------------------------------------------


class _ModuleScan:
    def __init__(self, filename: str, builder: _GraphBuilder, extractor: StaticAgentExtractor) -> None:
        self.filename = filename
        self.builder = builder
        self.extractor = extractor
        self.symbols: dict[str, ast.expr] = {}
        self.graph_builders: set[str] = set()

    def run(self, tree: ast.Module) -> None:
        definitions = self._collect_definitions(tree)
        for d in definitions:
            self.builder.add_node(
                GraphNode(
                    id=d.ident,
                    label=self._label(d),
                    kind=d.kind,
                    model=self._model(d.call),
                    source=f"{self.filename}:{d.lineno}",
                )
            )
        for d in definitions:
            self._definition_edges(d)
        for node in ast.walk(tree):
            if isinstance(node, ast.Call) and isinstance(node.func, ast.Attribute):
                self._method_call(node)

    # -- Definitions -----------------------------------------------------------

    def _collect_definitions(self, tree: ast.Module) -> list[_Definition]:
        definitions: list[_Definition] = []
        for node in ast.walk(tree):
            if isinstance(node, ast.Assign):
                targets = [t for t in node.targets if isinstance(t, (ast.Name, ast.Attribute))]
                value = node.value
            elif isinstance(node, ast.AnnAssign) and node.value is not None:
                targets = [node.target] if isinstance(node.target, (ast.Name, ast.Attribute)) else []
                value = node.value
            elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                definitions.extend(self._factory_definition(node))
                continue
            else:
                continue

            for target in targets:
                ident = _ref(target)
                if ident is None:
                    continue
                if isinstance(target, ast.Name):
                    self.symbols[ident] = value
                if not isinstance(value, ast.Call):
                    continue
                callee = _callee_name(value.func)
                if callee and self.extractor.is_graph_builder(callee):
                    self.graph_builders.add(ident)
                kind = self.extractor.classify(callee)
                if kind is not None:
                    definitions.append(_Definition(ident, value, kind, node.lineno, node.col_offset))

        definitions.sort(key=lambda d: (d.lineno, d.col))
        return definitions

    def _factory_definition(self, func: ast.FunctionDef | ast.AsyncFunctionDef) -> list[_Definition]:
        """``def researcher(self): return Agent(...)`` defines node ``researcher``."""
        for stmt in func.body:
            if isinstance(stmt, ast.Return) and isinstance(stmt.value, ast.Call):
                kind = self.extractor.classify(_callee_name(stmt.value.func))
                if kind is not None:
                    return [_Definition(func.name, stmt.value, kind, func.lineno, func.col_offset)]
        return []

    def _label(self, d: _Definition) -> str:
        for name in ("name", "role"):
            value = _str_const(_keyword(d.call, name))
            if value:
                return value.strip()
        if d.call.args:
            value = _str_const(d.call.args[0])
            if value:
                return value.strip()
        if d.kind == NodeKind.TASK:
            description = _str_const(_keyword(d.call, "description"))
            if description:
                text = " ".join(description.split())
                return text if len(text) <= _LABEL_MAX else text[: _LABEL_MAX - 3] + "..."
        return d.ident

    # -- Model binding ---------------------------------------------------------

    def _model(self, call: ast.Call) -> str | None:
        for kw in call.keywords:
            if kw.arg in _MODEL_KEYWORDS:
                model = self._model_from_expr(kw.value, 0)
            elif kw.arg == "llm_config":
                model = self._model_from_config(kw.value, 0)
            else:
                continue
            if model:
                return model
        return None

    def _resolve(self, expr: ast.expr, depth: int) -> ast.expr | None:
        if isinstance(expr, ast.Name) and depth < _RESOLVE_DEPTH:
            return self.symbols.get(expr.id)
        return None

    def _model_from_expr(self, expr: ast.expr, depth: int) -> str | None:
        value = _str_const(expr)
        if value is not None:
            return value
        if isinstance(expr, ast.Name):
            resolved = self._resolve(expr, depth)
            return self._model_from_expr(resolved, depth + 1) if resolved is not None else None
        if isinstance(expr, ast.Dict):
            return self._model_from_config(expr, depth + 1)
        if isinstance(expr, ast.Call):
            for name in ("model", "model_name", "model_id", "deployment_name"):
                inner = _keyword(expr, name)
                if inner is not None:
                    return self._model_from_expr(inner, depth + 1)
            if expr.args:
                return _str_const(expr.args[0])
        return None

    def _model_from_config(self, expr: ast.expr, depth: int) -> str | None:
        if isinstance(expr, ast.Name):
            resolved = self._resolve(expr, depth)
            return self._model_from_config(resolved, depth + 1) if resolved is not None else None
        if not isinstance(expr, ast.Dict):
            return None
        for key, value in zip(expr.keys, expr.values, strict=True):
            name = _str_const(key)
            if name == "model":
                return self._model_from_expr(value, depth + 1)
            if name == "config_list":
                entries = value
                if isinstance(entries, ast.Name):
                    entries = self._resolve(entries, depth) or entries
                for entry in _elements(entries):
                    model = self._model_from_config(entry, depth + 1)
                    if model:
                        return model
        return None

    # -- Edges -----------------------------------------------------------------

    def _definition_edges(self, d: _Definition) -> None:
        add = self.builder.add_edge
        if d.kind == NodeKind.TASK:
            add(_ref(_keyword(d.call, "agent")), d.ident, EdgeKind.ASSIGNED)
            for ctx in _elements(_keyword(d.call, "context")):
                add(_ref(ctx), d.ident, EdgeKind.CONTEXT)
        elif d.kind == NodeKind.CREW:
            for member in _elements(_keyword(d.call, "agents")):
                add(d.ident, _ref(member), EdgeKind.MEMBER)
            tasks = [_ref(t) for t in _elements(_keyword(d.call, "tasks"))]
            for task in tasks:
                add(d.ident, task, EdgeKind.MEMBER)
            for prev, nxt in zip(tasks, tasks[1:], strict=False):
                add(prev, nxt, EdgeKind.FLOW)
        elif d.kind == NodeKind.AGENT:
            add(d.ident, _ref(_keyword(d.call, "groupchat")), EdgeKind.MEMBER)

    def _method_call(self, call: ast.Call) -> None:
        assert isinstance(call.func, ast.Attribute)  # noqa: S101
        method = call.func.attr
        receiver = _ref(call.func.value)
        add = self.builder.add_edge

        if method == "initiate_chat":
            recipient = _keyword(call, "recipient") or (call.args[0] if call.args else None)
            add(receiver, _ref(recipient), EdgeKind.MESSAGE)
        elif method == "send":
            recipient = _keyword(call, "recipient") or (call.args[1] if len(call.args) > 1 else None)
            add(receiver, _ref(recipient), EdgeKind.MESSAGE)
        elif receiver in self.graph_builders:
            self._graph_builder_call(method, call)

    def _graph_builder_call(self, method: str, call: ast.Call) -> None:
        add = self.builder.add_edge
        args = call.args
        if method == "add_node" and args:
            name = _str_const(args[0]) or (_ref(args[0]) if len(args) == 1 else None)
            if name:
                self._step(name, call.lineno)
        elif method == "add_edge" and len(args) >= 2:
            sources = [self._step_ref(e, call.lineno) for e in _elements(args[0])] or [
                self._step_ref(args[0], call.lineno)
            ]
            target = self._step_ref(args[1], call.lineno)
            for source in sources:
                add(source, target, EdgeKind.FLOW)
        elif method == "add_conditional_edges" and args:
            source = self._step_ref(args[0], call.lineno)
            mapping = args[2] if len(args) > 2 else _keyword(call, "path_map")
            if isinstance(mapping, ast.Dict):
                for key, value in zip(mapping.keys, mapping.values, strict=True):
                    label = _str_const(key) if key is not None else None
                    add(source, self._step_ref(value, call.lineno), EdgeKind.FLOW, label)
            else:
                for value in _elements(mapping):
                    add(source, self._step_ref(value, call.lineno), EdgeKind.FLOW)
        elif method == "set_entry_point" and args:
            add(self._step(START_NODE, call.lineno), self._step_ref(args[0], call.lineno), EdgeKind.FLOW)
        elif method == "set_finish_point" and args:
            add(self._step_ref(args[0], call.lineno), self._step(END_NODE, call.lineno), EdgeKind.FLOW)

    def _step(self, name: str, lineno: int) -> str:
        if name not in self.builder.nodes:
            label = {START_NODE: "START", END_NODE: "END"}.get(name, name)
            self.builder.add_node(
                GraphNode(id=name, label=label, kind=NodeKind.STEP, source=f"{self.filename}:{lineno}")
            )
        return name

    def _step_ref(self, expr: ast.expr, lineno: int) -> str | None:
        if isinstance(expr, ast.Name) and expr.id in ("START", "END"):
            return self._step(START_NODE if expr.id == "START" else END_NODE, lineno)
        name = _str_const(expr)
        if name in (START_NODE, END_NODE):
            return self._step(name, lineno)
        return name


# ---------------------------------------------------------------------------
# Strategy
# ---------------------------------------------------------------------------


class StaticAgentExtractor:
    """Static ``ast``-based extractor.  Never executes the analysed code."""

    agent_names: frozenset[str] = frozenset({"GroupChatManager"})
    task_names: frozenset[str] = frozenset({"Task"})
    crew_names: frozenset[str] = frozenset({"Crew", "GroupChat"})

    def classify(self, callee: str | None) -> NodeKind | None:
        if not callee:
            return None
        if callee in self.crew_names:
            return NodeKind.CREW
        if callee in self.task_names:
            return NodeKind.TASK
        if callee in self.agent_names or callee.endswith("Agent"):
            return NodeKind.AGENT
        return None

    def is_graph_builder(self, callee: str) -> bool:
        return callee.endswith(("StateGraph", "MessageGraph"))

    def extract(self, files: Sequence[SheetFile]) -> AgentGraph:
        builder = _GraphBuilder()
        for f in sorted((f for f in files if f.is_python), key=lambda f: f.filename):
            try:
                tree = ast.parse(f.code, filename=f.filename)
            except SyntaxError as exc:
                msg = f"{f.filename}:{exc.lineno}: {exc.msg}"
                raise ExtractionError(msg) from exc
            _ModuleScan(f.filename, builder, self).run(tree)
        graph = builder.build()
        graph.source_digest = source_digest(files)
        return graph
