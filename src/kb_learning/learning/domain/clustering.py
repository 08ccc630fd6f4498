"""
Batch Pattern Extraction
=========================

Groups resolved tickets into patterns worth one knowledge article each.

Steps:
1. Canonical ordering of tickets (created_at, id)
2. Coarse grouping by (category, tag set) equality
3. Pairwise cosine similarity of description+resolution embeddings per group
4. Union-find merge of pairs at or above the similarity threshold
5. Drop clusters smaller than the minimum cluster size

The result is deterministic for a given input set: group keys are visited in
sorted order and every union-find root is the lowest canonical index of its
component.
"""

from typing import Awaitable, Callable, Dict, List, Sequence, Tuple

import numpy as np

from kb_learning.learning.domain.entities import Pattern, ResolvedTicket

Embedder = Callable[[str], Awaitable[List[float]]]
GroupKey = Tuple[str, Tuple[str, ...]]


class _UnionFind:
    """Disjoint sets whose root is always the smallest index in the set."""

    def __init__(self, size: int):
        self._parent = list(range(size))

    def find(self, i: int) -> int:
        while self._parent[i] != i:
            self._parent[i] = self._parent[self._parent[i]]
            i = self._parent[i]
        return i

    def union(self, a: int, b: int) -> None:
        root_a, root_b = self.find(a), self.find(b)
        if root_a == root_b:
            return
        low, high = min(root_a, root_b), max(root_a, root_b)
        self._parent[high] = low


def _normalize_rows(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


class PatternExtractor:
    """
    Clusters resolved tickets into patterns.

    Uses the same embedding function as article indexing so ticket and
    article vectors live in one space.
    """

    def __init__(self, embed: Embedder):
        self._embed = embed

    @staticmethod
    def group_key(ticket: ResolvedTicket) -> GroupKey:
        return ticket.category.strip().lower(), tuple(sorted(ticket.tag_set))

    async def extract_patterns(
        self,
        tickets: Sequence[ResolvedTicket],
        min_cluster_size: int = 2,
        similarity_threshold: float = 0.8
    ) -> List[Pattern]:
        """
        Extract patterns from resolved tickets.

        Args:
            tickets: Resolved tickets; duplicates by id are ignored
            min_cluster_size: Smallest cluster that becomes a pattern
            similarity_threshold: Cosine similarity needed to join a cluster

        Returns:
            Patterns ordered by size desc, then earliest member creation time
        """
        unique = {t.id: t for t in tickets}
        ordered = sorted(unique.values(), key=lambda t: (t.created_at, t.id))

        groups: Dict[GroupKey, List[ResolvedTicket]] = {}
        for ticket in ordered:
            groups.setdefault(self.group_key(ticket), []).append(ticket)

        patterns: List[Pattern] = []
        for key in sorted(groups):
            members = groups[key]
            if len(members) < min_cluster_size:
                continue
            patterns.extend(
                await self._cluster_group(members, min_cluster_size, similarity_threshold)
            )

        patterns.sort(key=lambda p: (-p.size, p.tickets[0].created_at, p.tickets[0].id))
        return patterns

    async def _cluster_group(
        self,
        members: List[ResolvedTicket],
        min_cluster_size: int,
        similarity_threshold: float
    ) -> List[Pattern]:
        vectors = []
        for ticket in members:
            vectors.append(await self._embed(ticket.learning_text))
        matrix = _normalize_rows(np.asarray(vectors, dtype=np.float64))
        similarity = matrix @ matrix.T

        uf = _UnionFind(len(members))
        for i in range(len(members)):
            for j in range(i + 1, len(members)):
                if similarity[i, j] >= similarity_threshold:
                    uf.union(i, j)

        components: Dict[int, List[int]] = {}
        for i in range(len(members)):
            components.setdefault(uf.find(i), []).append(i)

        patterns = []
        for root in sorted(components):
            indices = components[root]
            if len(indices) < min_cluster_size:
                continue

            cluster_tickets = [members[i] for i in indices]
            centroid = matrix[indices].mean(axis=0)
            # argmax returns the first (earliest) index on ties
            closest = int(np.argmax(matrix[indices] @ centroid))
            anchor = members[root]

            patterns.append(Pattern(
                cluster_id=f"{anchor.category.strip().lower()}:{anchor.id}",
                member_ticket_ids=[t.id for t in cluster_tickets],
                representative_text=cluster_tickets[closest].learning_text,
                category=anchor.category.strip(),
                tags=sorted(anchor.tag_set),
                tickets=cluster_tickets,
            ))
        return patterns
