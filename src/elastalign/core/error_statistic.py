"""
Running error statistic with plateau detection for iterative optimizers
"""

import numpy as np
from typing import List

# Slopes flatter than this count as plateau
PLATEAU_SLOPE = 0.0001


class ErrorStatistic:
    """Records one error value per iteration"""

    def __init__(self):
        self.values: List[float] = []
        self.min = float('inf')
        self.max = 0.0

    def __len__(self) -> int:
        return len(self.values)

    def add(self, value: float):
        value = float(value)
        self.values.append(value)
        self.min = min(self.min, value)
        self.max = max(self.max, value)

    @property
    def last(self) -> float:
        return self.values[-1] if self.values else float('inf')

    @property
    def mean(self) -> float:
        return float(np.mean(self.values)) if self.values else 0.0

    def wide_slope(self, width: int) -> float:
        """Average change per iteration over the last `width` iterations"""
        n = len(self.values)
        if n < 2:
            return float('inf')
        width = max(1, min(width, n - 1))
        return (self.values[-1] - self.values[-1 - width]) / width

    def has_converged(self, max_epsilon: float, max_plateau_width: int) -> bool:
        """
        True once the error is below max_epsilon and flat over the plateau
        width and every halving of it
        """
        if len(self.values) <= max_plateau_width:
            return False
        if self.last > max_epsilon:
            return False
        d = max_plateau_width
        while d >= 1:
            if abs(self.wide_slope(d)) > PLATEAU_SLOPE:
                return False
            d //= 2
        return True

    def to_dict(self) -> dict:
        return {
            'iterations': len(self.values),
            'final_error': self.last if self.values else None,
            'min_error': self.min if self.values else None,
            'max_error': self.max if self.values else None,
        }
