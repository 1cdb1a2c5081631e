"""
Course resource tree.

Turns the flat list of course_resources rows (each pointing at its parent
folder) into an ordered forest of immutable nodes, and answers the queries
the course viewer needs: the default resource to open, a filtered view, and
folder breadcrumbs.
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

log = logging.getLogger(__name__)


class DataError(Exception):
    """A course's resource rows are inconsistent and cannot form a tree."""


class DuplicateIdError(DataError):
    def __init__(self, resource_id):
        super().__init__(f'Duplicate resource id: {resource_id}')
        self.resource_id = resource_id


class CycleError(DataError):
    def __init__(self, resource_ids):
        self.resource_ids = list(resource_ids)
        super().__init__(
            'Resource folders form a cycle: ' + ' -> '.join(self.resource_ids))


class UnknownResourceError(DataError):
    def __init__(self, resource_id):
        super().__init__(f'Unknown resource id: {resource_id}')
        self.resource_id = resource_id


class ResourceKind(Enum):
    VIDEO = "video"
    PDF = "pdf"
    PPT = "ppt"
    OTHER = "other"

    @classmethod
    def from_type(cls, resource_type, filename=None):
        """Map a stored type column to a kind.

        Uploads made as a generic "document" carry no precise type, so the
        file extension decides between pdf, ppt and other.
        """
        value = (resource_type or '').strip().lower()
        if value == 'video':
            return cls.VIDEO
        if value == 'pdf':
            return cls.PDF
        if value in ('ppt', 'pptx'):
            return cls.PPT
        if filename:
            ext = os.path.splitext(filename)[1].lower().lstrip('.')
            if ext in VIDEO_EXTENSIONS:
                return cls.VIDEO
            if ext == 'pdf':
                return cls.PDF
            if ext in ('ppt', 'pptx'):
                return cls.PPT
        return cls.OTHER


VIDEO_EXTENSIONS = {'mp4', 'webm', 'mov', 'm4v', 'ogg', 'mkv', 'avi'}


@dataclass(frozen=True)
class ResourceRecord:
    """One course_resources row as fetched from storage."""
    id: str
    name: str
    parent_id: Optional[str] = None
    is_folder: bool = False
    kind: ResourceKind = ResourceKind.OTHER
    order_index: int = 0
    locator: Optional[str] = None


@dataclass(frozen=True)
class ResourceNode:
    record: ResourceRecord
    children: Tuple['ResourceNode', ...] = field(default_factory=tuple)

    @property
    def id(self):
        return self.record.id

    @property
    def is_folder(self):
        return self.record.is_folder

    @property
    def kind(self):
        return self.record.kind

    def to_dict(self, leaf_extra=None):
        """JSON-ready form of the subtree.

        ``leaf_extra`` is called with each leaf record and its result merged
        into that leaf's dict (the API uses it to add viewer URLs).
        """
        built = {}
        for node in _post_order([self]):
            data = _node_fields(node.record, leaf_extra)
            if node.is_folder:
                data['children'] = [built.pop(id(c)) for c in node.children]
            built[id(node)] = data
        return built[id(self)]


def _node_fields(record, leaf_extra):
    data = {
        'id': record.id,
        'name': record.name,
        'parent_id': record.parent_id,
        'is_folder': record.is_folder,
        'order_index': record.order_index,
    }
    if not record.is_folder:
        data['kind'] = record.kind.value
        data['locator'] = record.locator
        if leaf_extra is not None:
            data.update(leaf_extra(record))
    return data


def to_arena(forest, leaf_extra=None):
    """Flat JSON-ready form of the forest.

    Nodes are listed in pre-order and folders name their children by id,
    so the output nests no deeper than one level however deep the tree is.
    """
    forest = tuple(forest)
    nodes = []
    for node in iter_nodes(forest):
        data = _node_fields(node.record, leaf_extra)
        if node.is_folder:
            data['children'] = [c.id for c in node.children]
        nodes.append(data)
    return {'roots': [n.id for n in forest], 'nodes': nodes}


Forest = Tuple[ResourceNode, ...]


def _index(records):
    lookup = {}
    for record in records:
        if record.id in lookup:
            raise DuplicateIdError(record.id)
        lookup[record.id] = record
    return lookup


def _check_cycles(lookup):
    # Each record's parent chain is walked until it reaches a root or a
    # record already known to be acyclic, so every record is visited once.
    settled = set()
    for start in lookup:
        path = []
        on_path = set()
        current = start
        while current in lookup and current not in settled:
            if current in on_path:
                raise CycleError(path[path.index(current):] + [current])
            on_path.add(current)
            path.append(current)
            current = lookup[current].parent_id
        settled.update(path)


def _sort_key(positions):
    return lambda record: (record.order_index, positions[record.id])


def build_tree(records: Iterable[ResourceRecord]) -> Forest:
    """Build an ordered forest from a flat batch of resource records.

    Records whose parent is missing from the batch are kept as roots.
    Siblings are ordered by ``order_index``, ties keeping input order.
    Raises DuplicateIdError or CycleError when the batch is inconsistent.
    """
    records = list(records)
    lookup = _index(records)
    _check_cycles(lookup)

    children: Dict[str, List[ResourceRecord]] = {r.id: [] for r in records}
    roots: List[ResourceRecord] = []
    for record in records:
        if record.parent_id is None:
            roots.append(record)
        elif record.parent_id in children:
            children[record.parent_id].append(record)
        else:
            log.warning('Resource %s references missing parent %s, '
                        'placing it at the root', record.id, record.parent_id)
            roots.append(record)

    key = _sort_key({r.id: pos for pos, r in enumerate(records)})
    roots.sort(key=key)
    for siblings in children.values():
        siblings.sort(key=key)

    # Pre-order walk, then build nodes bottom-up so each node is created
    # once, after all of its children.
    order = []
    stack = list(reversed(roots))
    while stack:
        record = stack.pop()
        order.append(record)
        stack.extend(reversed(children[record.id]))

    nodes: Dict[str, ResourceNode] = {}
    for record in reversed(order):
        nodes[record.id] = ResourceNode(
            record, tuple(nodes[c.id] for c in children[record.id]))
    return tuple(nodes[r.id] for r in roots)


def iter_nodes(forest: Iterable[ResourceNode]) -> Iterator[ResourceNode]:
    """Depth-first pre-order iteration over every node of the forest."""
    stack = list(reversed(tuple(forest)))
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(node.children))


def _post_order(forest):
    # Reversed pre-order puts every node after all of its descendants.
    return reversed(list(iter_nodes(forest)))


def count_nodes(forest):
    return sum(1 for _ in iter_nodes(forest))


def find_node(forest, resource_id):
    for node in iter_nodes(forest):
        if node.id == resource_id:
            return node
    return None


def find_first_leaf(forest: Iterable[ResourceNode]) -> Optional[ResourceNode]:
    """The first non-folder node in depth-first pre-order, or None."""
    for node in iter_nodes(forest):
        if not node.is_folder:
            return node
    return None


def filter_preserving_ancestors(
        forest: Iterable[ResourceNode],
        predicate: Callable[[ResourceNode], bool]) -> Forest:
    """Prune the forest to matching nodes and the folders leading to them.

    A folder survives only if it matches or has a matching descendant, and
    then keeps only the children that survive. Order is preserved.
    """
    forest = tuple(forest)
    kept = {}
    for node in _post_order(forest):
        children = tuple(kept[id(c)] for c in node.children if id(c) in kept)
        if children or predicate(node):
            kept[id(node)] = ResourceNode(node.record, children)
    return tuple(kept[id(n)] for n in forest if id(n) in kept)


def is_video(node):
    return not node.is_folder and node.kind is ResourceKind.VIDEO


def is_document(node):
    return not node.is_folder and node.kind in (ResourceKind.PDF,
                                                ResourceKind.PPT)


VIEW_FILTERS = {
    'video': is_video,
    'document': is_document,
}


def subtree_ids(node):
    return [n.id for n in iter_nodes([node])]


def ancestors(records, resource_id):
    """Breadcrumb path from the root down to ``resource_id``, inclusive."""
    lookup = _index(records)
    if resource_id not in lookup:
        raise UnknownResourceError(resource_id)
    path = []
    seen = set()
    current = resource_id
    while current in lookup:
        if current in seen:
            raise CycleError([r.id for r in reversed(path)] + [current])
        seen.add(current)
        path.append(lookup[current])
        current = lookup[current].parent_id
    path.reverse()
    return path
