from dataclasses import dataclass
from typing import Sequence, Union

import numpy as np
import pandas as pd


ArrayLike = Union[Sequence[float], np.ndarray]


@dataclass(frozen=True)
class MACDResult:
    macd_line: np.ndarray
    signal_line: np.ndarray
    histogram: np.ndarray

    def __len__(self) -> int:
        return len(self.macd_line)

    def at(self, index: int):
        return (
            float(self.macd_line[index]),
            float(self.signal_line[index]),
            float(self.histogram[index]),
        )


def ema(values: ArrayLike, period: int) -> np.ndarray:
    """Exponential moving average seeded with the first value.

    Output has the same length as the input; there is no warm-up trimming,
    so early values are biased toward ``values[0]``.
    """
    if period <= 0:
        raise ValueError("EMA period must be positive")
    data = np.asarray(values, dtype=float)
    if data.size == 0:
        return data.copy()
    # adjust=False: out[0] = values[0], then k = 2 / (period + 1)
    return pd.Series(data).ewm(span=period, adjust=False).mean().to_numpy()


def macd(closes: ArrayLike, fast: int = 12, slow: int = 26, signal: int = 9) -> MACDResult:
    prices = np.asarray(closes, dtype=float)
    macd_line = ema(prices, fast) - ema(prices, slow)
    signal_line = ema(macd_line, signal)
    return MACDResult(macd_line, signal_line, macd_line - signal_line)


def warmup_bars(slow: int) -> int:
    # first bar index a simulation evaluates
    return slow + 2
