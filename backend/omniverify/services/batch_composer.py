# backend/omniverify/services/batch_composer.py
"""
Domain-interleaving batch composer.

Reorders a batch so consecutive emails hit different mail domains; a slow or
throttling MX then never sees a burst of back-to-back lookups. Every strategy
returns a permutation of its input. The metrics are for logs only.
"""
import hashlib
import logging
import math
import random
import statistics
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Optional

logger = logging.getLogger("omniverify.batch_composer")

ROUND_ROBIN = "round_robin"
WEIGHTED = "weighted"
RANDOM = "random"
SIZE_BASED = "size_based"

STRATEGIES = (ROUND_ROBIN, WEIGHTED, RANDOM, SIZE_BASED)


def extract_domain(email: str) -> str:
    if not email or "@" not in email:
        return ""
    return email.rsplit("@", 1)[1].strip().lower()


def domain_hash(domain: str) -> str:
    return hashlib.md5(domain.lower().encode("utf-8")).hexdigest()


@dataclass
class CompositionMetrics:
    distribution_score: float = 0.0
    diversity_index: float = 0.0
    clustering_score: float = 0.0
    efficiency: float = 0.0
    domain_size_stats: Dict[str, float] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {
            "distribution_score": round(self.distribution_score, 4),
            "diversity_index": round(self.diversity_index, 4),
            "clustering_score": round(self.clustering_score, 4),
            "efficiency": round(self.efficiency, 4),
            "domain_size_stats": self.domain_size_stats,
        }


@dataclass
class CompositionResult:
    emails: List[str]
    strategy: str
    domain_count: int
    metrics: CompositionMetrics


class BatchComposer:
    def __init__(self, default_strategy: str = ROUND_ROBIN, rng: Optional[random.Random] = None):
        if default_strategy not in STRATEGIES:
            logger.warning("Unknown default strategy %r, using %s", default_strategy, ROUND_ROBIN)
            default_strategy = ROUND_ROBIN
        self.default_strategy = default_strategy
        self._rng = rng or random.Random()

    # ---------------------------------------------------
    # Public API
    # ---------------------------------------------------
    def optimize(self, emails: List[str], strategy: Optional[str] = None) -> CompositionResult:
        strategy = strategy or self.default_strategy
        if strategy not in STRATEGIES:
            logger.warning("Unknown composition strategy %r, falling back to %s", strategy, ROUND_ROBIN)
            strategy = ROUND_ROBIN

        if not emails:
            return CompositionResult([], strategy, 0, CompositionMetrics())

        groups = self.group_by_domain(emails)

        if len(groups) == 1:
            ordered = list(emails)
            self._rng.shuffle(ordered)
        elif strategy == WEIGHTED:
            ordered = self._weighted(groups, len(emails))
        elif strategy == RANDOM:
            ordered = list(emails)
            self._rng.shuffle(ordered)
        elif strategy == SIZE_BASED:
            ordered = self._size_based(groups, len(emails))
        else:
            ordered = self._round_robin(groups)

        metrics = self.compute_metrics(ordered, groups)
        logger.debug(
            "Composed %d emails across %d domains strategy=%s efficiency=%.3f",
            len(ordered), len(groups), strategy, metrics.efficiency,
        )
        return CompositionResult(ordered, strategy, len(groups), metrics)

    @staticmethod
    def group_by_domain(emails: List[str]) -> "OrderedDict[str, List[str]]":
        groups: "OrderedDict[str, List[str]]" = OrderedDict()
        for email in emails:
            # unparseable addresses share the "" group, they are never dropped
            groups.setdefault(extract_domain(email), []).append(email)
        return groups

    # ---------------------------------------------------
    # Strategies
    # ---------------------------------------------------
    @staticmethod
    def _round_robin(groups) -> List[str]:
        queues = [list(g) for g in groups.values()]
        out: List[str] = []
        index = 0
        while queues:
            if index >= len(queues):
                index = 0
            q = queues[index]
            out.append(q.pop(0))
            if q:
                index += 1
            else:
                queues.pop(index)
        return out

    @staticmethod
    def _weighted(groups, total: int) -> List[str]:
        # bigger domains get shorter intervals between their slots
        queues = {d: list(g) for d, g in groups.items()}
        interval = {d: max(1, math.ceil(total / len(g))) for d, g in groups.items()}
        next_slot = {d: 0 for d in groups}

        out: List[str] = []
        for position in range(total):
            due = [d for d in queues if queues[d] and next_slot[d] <= position]
            if due:
                domain = min(due, key=lambda d: next_slot[d])
            else:
                # nothing due yet: take the first domain that still has emails
                domain = next(d for d in queues if queues[d])
            out.append(queues[domain].pop(0))
            next_slot[domain] = position + interval[domain]
        return out

    @staticmethod
    def size_based_chunk(size: int, base: int) -> int:
        if size <= base:
            return 1
        if size <= base * 5:
            return max(1, math.ceil(size / 20))
        return max(1, math.ceil(size / 10))

    def _size_based(self, groups, total: int) -> List[str]:
        base = max(1, math.ceil(total / (len(groups) * 10)))
        queues = [(list(g), self.size_based_chunk(len(g), base)) for g in groups.values()]

        out: List[str] = []
        while queues:
            remaining = []
            for q, chunk in queues:
                out.extend(q[:chunk])
                del q[:chunk]
                if q:
                    remaining.append((q, chunk))
            queues = remaining
        return out

    # ---------------------------------------------------
    # Metrics
    # ---------------------------------------------------
    def compute_metrics(self, ordered: List[str], groups=None) -> CompositionMetrics:
        if not ordered:
            return CompositionMetrics()
        groups = groups if groups is not None else self.group_by_domain(ordered)
        domains = [extract_domain(e) for e in ordered]

        distribution = self._distribution_score(domains)
        diversity = self._diversity_index([len(g) for g in groups.values()], len(ordered))
        clustering = self._clustering_score(domains)
        sizes = sorted(len(g) for g in groups.values())

        return CompositionMetrics(
            distribution_score=distribution,
            diversity_index=diversity,
            clustering_score=clustering,
            efficiency=(distribution + diversity + (1 - clustering)) / 3,
            domain_size_stats={
                "min": sizes[0],
                "max": sizes[-1],
                "avg": round(sum(sizes) / len(sizes), 2),
                "median": statistics.median(sizes),
            },
        )

    @staticmethod
    def _distribution_score(domains: List[str]) -> float:
        window = min(100, math.ceil(len(domains) / 10))
        scores = []
        for start in range(0, len(domains), window):
            chunk = domains[start:start + window]
            scores.append(len(set(chunk)) / len(chunk))
        return sum(scores) / len(scores)

    @staticmethod
    def _diversity_index(sizes: List[int], total: int) -> float:
        if len(sizes) <= 1:
            return 0.0
        entropy = -sum((s / total) * math.log2(s / total) for s in sizes if s)
        return entropy / math.log2(len(sizes))

    @staticmethod
    def _clustering_score(domains: List[str]) -> float:
        if len(domains) < 2:
            return 0.0
        same = sum(1 for a, b in zip(domains, domains[1:]) if a == b)
        return same / (len(domains) - 1)
