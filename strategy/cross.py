from enum import Enum

from analytics.indicators import MACDResult


class CrossSignal(Enum):
    BULL = "bull"
    BEAR = "bear"
    NONE = "none"


def detect_cross(prev_main: float, prev_signal: float, cur_main: float, cur_signal: float) -> CrossSignal:
    """Classify the transition between two consecutive (main, signal) pairs.

    Both sides use strict inequalities, so a bar where the lines touch never
    counts as a cross.
    """
    if prev_main < prev_signal and cur_main > cur_signal:
        return CrossSignal.BULL
    if prev_main > prev_signal and cur_main < cur_signal:
        return CrossSignal.BEAR
    return CrossSignal.NONE


def cross_at(result: MACDResult, index: int) -> CrossSignal:
    if len(result) < 2:
        return CrossSignal.NONE
    if index < 0:
        index += len(result)
    if index < 1 or index >= len(result):
        return CrossSignal.NONE
    return detect_cross(
        float(result.macd_line[index - 1]),
        float(result.signal_line[index - 1]),
        float(result.macd_line[index]),
        float(result.signal_line[index]),
    )
