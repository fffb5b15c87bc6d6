from typing import Dict, Iterable, List

from trustproof.schemas import SOURCE_WEIGHTS, CertaintySnapshot, ProofSource, ProofSourceType

# Denominator of the coefficient: every proof type verified gives 1.0
TOTAL_SOURCE_WEIGHT = sum(SOURCE_WEIGHTS.values())


def certainty_coefficient(sources: Iterable[ProofSource]) -> float:
    """
    Reliability-weighted share of the evidence that is verified.

    Sum of the weights of verified sources over the sum of all source weights.
    Unverified sources contribute nothing, so verifying another source can only
    raise the value, an empty session is 0.0 and the full set is 1.0.
    """
    verified = sum(s.weight for s in sources if s.verified)
    return round(min(1.0, verified / TOTAL_SOURCE_WEIGHT), 4)


class ProofRegistry:
    """One entry per proof type for a single verification session. No I/O."""

    def __init__(self) -> None:
        self._sources: Dict[ProofSourceType, ProofSource] = {}

    def register(self, source: ProofSource) -> None:
        self._sources[source.type] = source

    def get(self, source_type: ProofSourceType) -> ProofSource | None:
        return self._sources.get(source_type)

    @property
    def sources(self) -> List[ProofSource]:
        return sorted(self._sources.values(), key=lambda s: s.type.value)

    def snapshot(self) -> CertaintySnapshot:
        sources = tuple(self.sources)
        return CertaintySnapshot(sources=sources, certainty_coefficient=certainty_coefficient(sources))

    def clear(self) -> None:
        self._sources.clear()

    def __len__(self) -> int:
        return len(self._sources)
