"""PriceConsensus: Reduce several providers' quotes to one trusted price.

Algorithm:
    1. Filter out non-positive prices
    2. One price: return it unchanged
    3. Sort ascending and take the median (lower-middle element on even counts)
    4. Drop prices deviating more than max_deviation from the median
    5. If fewer than count * threshold prices survive, return the median
    6. Otherwise return the arithmetic mean of the survivors

.. code-block:: python

    >>> consensus = PriceConsensus(threshold=0.5)
    >>> result = consensus.reduce([100.0, 100.0, 1000.0])
    >>> result.price
    100.0
    >>> result.dropped
    [1000.0]
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class ConsensusResult:
    """Result of a consensus reduction.

    :ivar price: The consensus price.
    :ivar median: Median of all valid input prices.
    :ivar used: Prices that survived outlier filtering.
    :ivar dropped: Prices discarded as outliers.
    :ivar fallback: True if the median was returned because too many
        prices were discarded.
    """

    price: float
    median: float
    used: list[float] = field(default_factory=list)
    dropped: list[float] = field(default_factory=list)
    fallback: bool = False


class PriceConsensus:
    """Computes an outlier-filtered consensus price.

    :ivar threshold: Fraction of prices that must survive filtering for the
        filtered mean to be trusted (0.5 = half).
    :ivar max_deviation: Maximum relative deviation from the median before a
        price is considered an outlier (0.1 = 10%).

    .. code-block:: python

        >>> PriceConsensus().reduce([100.0, 101.0, 102.0]).price
        101.0
    """

    DEFAULT_THRESHOLD = 0.5
    DEFAULT_MAX_DEVIATION = 0.1

    def __init__(
        self,
        threshold: float = DEFAULT_THRESHOLD,
        max_deviation: float = DEFAULT_MAX_DEVIATION,
    ) -> None:
        """Initialize the consensus calculator.

        :param threshold: Required surviving fraction, in (0, 1].
        :param max_deviation: Relative deviation limit, must be positive.
        :raises ValueError: If parameters are invalid.
        """
        if not 0 < threshold <= 1:
            raise ValueError("threshold must be in (0, 1]")
        if max_deviation <= 0:
            raise ValueError("max_deviation must be positive")

        self.threshold = threshold
        self.max_deviation = max_deviation

    def reduce(self, prices: list[float]) -> ConsensusResult:
        """Reduce prices for one symbol to a consensus price.

        :param prices: Prices gathered from distinct providers in one round.
        :returns: ConsensusResult with the price and filtering details.
        :raises ValueError: If no positive price is given.
        """
        valid = sorted(p for p in prices if p > 0)
        if not valid:
            raise ValueError("No prices available for consensus")

        if len(valid) == 1:
            return ConsensusResult(price=valid[0], median=valid[0], used=list(valid))

        median = valid[(len(valid) - 1) // 2]

        used: list[float] = []
        dropped: list[float] = []
        for price in valid:
            if abs(price - median) / median <= self.max_deviation:
                used.append(price)
            else:
                dropped.append(price)

        # Too much disagreement to average safely
        if len(used) < len(valid) * self.threshold:
            return ConsensusResult(
                price=median, median=median, used=used, dropped=dropped, fallback=True
            )

        return ConsensusResult(
            price=sum(used) / len(used), median=median, used=used, dropped=dropped
        )
