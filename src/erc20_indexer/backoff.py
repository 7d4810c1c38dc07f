from dataclasses import dataclass


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential delay for the given 1-based attempt, capped at max_delay"""
    if attempt < 1:
        return 0.0
    # cap the exponent so huge attempt counts don't overflow the float
    exponent = min(attempt - 1, 62)
    return min(base_delay * (2**exponent), max_delay)


@dataclass
class Backoff:
    """Attempt counter plus delay function for the pipeline's backoff state.

    The counter is unbounded; only the delay is capped.
    """

    base_delay: float
    max_delay: float
    attempt: int = 0

    def next_delay(self) -> float:
        self.attempt += 1
        return backoff_delay(self.attempt, self.base_delay, self.max_delay)

    def reset(self) -> None:
        self.attempt = 0
