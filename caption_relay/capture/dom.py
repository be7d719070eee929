"""
Minimal element tree with MutationObserver-style subscriptions.

The monitored surface (a meeting page) is mirrored as Element/TextNode objects.
Whatever drives the tree (a browser bridge, a replay, a test) mutates it through
append_child / remove_child / TextNode.set_data; the owning Document records a
MutationRecord for each change and hands it to every subscription whose target
contains the changed node.

Document.observe(target) returns a MutationSubscription: an async iterator of
mutation batches. Records queued during one loop turn arrive as one batch.
disconnect() ends the iteration; observe() again to restart on another target.

Selector support is deliberately small (caption selectors are config data):
tag, #id, .class, [attr], [attr="v"], [attr*="v"], [attr^="v"], [attr$="v"]
and compounds of these. No combinators.
"""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import AsyncIterator, Iterator, Optional


class Node:
    """Base for tree nodes."""

    def __init__(self) -> None:
        self.parent: Element | None = None
        self._document: Document | None = None

    @property
    def owner_document(self) -> Document | None:
        node: Node | None = self
        while node is not None:
            if node._document is not None:
                return node._document
            node = node.parent
        return None

    @property
    def text_content(self) -> str:
        raise NotImplementedError

    def is_inside(self, ancestor: Node) -> bool:
        """True if ancestor is this node or one of its parents."""
        node: Node | None = self
        while node is not None:
            if node is ancestor:
                return True
            node = node.parent
        return False


class TextNode(Node):
    def __init__(self, data: str = "") -> None:
        super().__init__()
        self.data = data

    @property
    def text_content(self) -> str:
        return self.data

    def set_data(self, data: str) -> None:
        """Replace text in place (characterData mutation)."""
        self.data = data
        doc = self.owner_document
        if doc is not None:
            doc._record(MutationRecord(type="characterData", target=self))

    def __repr__(self) -> str:
        return f"TextNode({self.data!r})"


class Element(Node):
    def __init__(
        self,
        tag: str,
        attrs: dict[str, str] | None = None,
        children: list[Node] | None = None,
        text: str | None = None,
    ) -> None:
        super().__init__()
        self.tag = tag.lower()
        self.attrs: dict[str, str] = dict(attrs or {})
        self.children: list[Node] = []
        if text is not None:
            self._attach(TextNode(text))
        for child in children or []:
            self._attach(child)

    @property
    def classes(self) -> list[str]:
        return self.attrs.get("class", "").split()

    @property
    def text_content(self) -> str:
        return "".join(child.text_content for child in self.children)

    def _attach(self, node: Node) -> None:
        if node.parent is not None:
            node.parent.children.remove(node)
        node.parent = self
        self.children.append(node)

    def append_child(self, node: Node) -> Node:
        """Append node; records a childList mutation on this element."""
        self._attach(node)
        doc = self.owner_document
        if doc is not None:
            doc._record(MutationRecord(type="childList", target=self, added_nodes=(node,)))
        return node

    def remove_child(self, node: Node) -> Node:
        self.children.remove(node)
        node.parent = None
        doc = self.owner_document
        if doc is not None:
            doc._record(MutationRecord(type="childList", target=self, removed_nodes=(node,)))
        return node

    def set_text(self, text: str) -> None:
        """Update text: edits the first text child in place, or appends one."""
        for child in self.children:
            if isinstance(child, TextNode):
                child.set_data(text)
                return
        self.append_child(TextNode(text))

    def iter_descendants(self) -> Iterator[Element]:
        """Element descendants in document order (excluding self)."""
        for child in self.children:
            if isinstance(child, Element):
                yield child
                yield from child.iter_descendants()

    def matches(self, selector: str) -> bool:
        return _compile(selector).matches(self)

    def query_selector(self, selector: str) -> Optional[Element]:
        """First descendant matching selector, or None."""
        compiled = _compile(selector)
        for el in self.iter_descendants():
            if compiled.matches(el):
                return el
        return None

    def __repr__(self) -> str:
        return f"Element({self.tag!r}, {self.attrs!r})"


@dataclass(frozen=True)
class MutationRecord:
    type: str  # "childList" | "characterData"
    target: Node
    added_nodes: tuple[Node, ...] = ()
    removed_nodes: tuple[Node, ...] = ()


class MutationSubscription:
    """Async iterator of mutation batches for one observed target."""

    def __init__(self, document: Document, target: Element) -> None:
        self.document = document
        self.target = target
        self._pending: list[MutationRecord] = []
        self._wakeup = asyncio.Event()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _enqueue(self, record: MutationRecord) -> None:
        if self._closed:
            return
        self._pending.append(record)
        self._wakeup.set()

    def take_records(self) -> list[MutationRecord]:
        """Drain pending records without waiting."""
        batch, self._pending = self._pending, []
        self._wakeup.clear()
        return batch

    def disconnect(self) -> None:
        """Stop receiving; pending records are discarded and iteration ends."""
        if self._closed:
            return
        self._closed = True
        self._pending = []
        self.document._unsubscribe(self)
        self._wakeup.set()

    def __aiter__(self) -> AsyncIterator[list[MutationRecord]]:
        return self

    async def __anext__(self) -> list[MutationRecord]:
        while True:
            if self._closed:
                raise StopAsyncIteration
            if self._pending:
                return self.take_records()
            await self._wakeup.wait()
            self._wakeup.clear()


class Document:
    """Owner of an element tree; routes mutation records to subscriptions."""

    def __init__(self, url: str = "", root: Element | None = None) -> None:
        self.url = url
        self.root = root if root is not None else Element("body")
        self.root._document = self
        self._subscriptions: list[MutationSubscription] = []

    def query_selector(self, selector: str) -> Optional[Element]:
        if self.root.matches(selector):
            return self.root
        return self.root.query_selector(selector)

    def observe(self, target: Element | None = None) -> MutationSubscription:
        """Subscribe to mutations inside target (default: whole document)."""
        sub = MutationSubscription(self, target if target is not None else self.root)
        self._subscriptions.append(sub)
        return sub

    def _unsubscribe(self, sub: MutationSubscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    def _record(self, record: MutationRecord) -> None:
        for sub in list(self._subscriptions):
            if record.target.is_inside(sub.target):
                sub._enqueue(record)


# --- selectors ---

_SELECTOR_TOKEN = re.compile(
    r"""
      (?P<tag>[a-zA-Z][\w-]*)
    | \#(?P<id>[\w-]+)
    | \.(?P<cls>[\w-]+)
    | \[\s*(?P<attr>[\w-]+)\s*
        (?:(?P<op>[*^$]?=)\s*(?P<quote>["']?)(?P<value>.*?)(?P=quote)\s*)?
      \]
    """,
    re.VERBOSE,
)


@dataclass
class _Selector:
    tag: str | None = None
    ids: list[str] = field(default_factory=list)
    classes: list[str] = field(default_factory=list)
    attrs: list[tuple[str, str | None, str]] = field(default_factory=list)

    def matches(self, el: Element) -> bool:
        if self.tag and el.tag != self.tag:
            return False
        if any(el.attrs.get("id") != i for i in self.ids):
            return False
        el_classes = el.classes
        if any(c not in el_classes for c in self.classes):
            return False
        for name, op, value in self.attrs:
            actual = el.attrs.get(name)
            if actual is None:
                return False
            if op == "=" and actual != value:
                return False
            if op == "*=" and value not in actual:
                return False
            if op == "^=" and not actual.startswith(value):
                return False
            if op == "$=" and not actual.endswith(value):
                return False
        return True


@lru_cache(maxsize=256)
def _compile(selector: str) -> _Selector:
    text = selector.strip()
    if not text:
        raise ValueError("empty selector")
    compiled = _Selector()
    pos = 0
    while pos < len(text):
        m = _SELECTOR_TOKEN.match(text, pos)
        if not m:
            raise ValueError(f"unsupported selector: {selector!r}")
        if m.group("tag"):
            if pos != 0:
                raise ValueError(f"unsupported selector: {selector!r}")
            compiled.tag = m.group("tag").lower()
        elif m.group("id"):
            compiled.ids.append(m.group("id"))
        elif m.group("cls"):
            compiled.classes.append(m.group("cls"))
        else:
            compiled.attrs.append((m.group("attr"), m.group("op"), m.group("value") or ""))
        pos = m.end()
    return compiled
