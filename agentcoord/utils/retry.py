from __future__ import annotations

import random
from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field

from ..errors import ErrorCategory

_RETRYABLE = [
    ErrorCategory.TIMEOUT,
    ErrorCategory.RATE_LIMIT,
    ErrorCategory.EXTERNAL_SERVICE,
    ErrorCategory.DATABASE,
]
_NON_RETRYABLE = [
    ErrorCategory.VALIDATION,
    ErrorCategory.AUTHORIZATION,
    ErrorCategory.NOT_FOUND,
]


class RetryPolicy(BaseModel):
    """Named retry behaviour. Delays are in seconds."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    max_retries: int = Field(default=3, ge=0, alias="maxRetries")
    base_delay: float = Field(default=1.0, ge=0, alias="baseDelay")
    max_delay: float = Field(default=30.0, ge=0, alias="maxDelay")
    factor: float = Field(default=2.0, ge=1)
    jitter: bool = True
    retryable_categories: List[ErrorCategory] = Field(
        default_factory=lambda: list(_RETRYABLE), alias="retryableCategories"
    )
    non_retryable_categories: List[ErrorCategory] = Field(
        default_factory=lambda: list(_NON_RETRYABLE), alias="nonRetryableCategories"
    )

    def should_retry(self, category: ErrorCategory | str) -> bool:
        category = ErrorCategory(category)
        if category in self.non_retryable_categories:
            return False
        return category in self.retryable_categories


BUILTIN_POLICIES: Dict[str, RetryPolicy] = {
    "default": RetryPolicy(),
    "ai-service": RetryPolicy(max_retries=5, base_delay=2.0, max_delay=60.0),
    "quick": RetryPolicy(
        max_retries=2,
        base_delay=0.5,
        max_delay=5.0,
        retryable_categories=[
            ErrorCategory.TIMEOUT,
            ErrorCategory.EXTERNAL_SERVICE,
            ErrorCategory.DATABASE,
        ],
        non_retryable_categories=_NON_RETRYABLE + [ErrorCategory.RATE_LIMIT],
    ),
}


def compute_backoff(
    attempt: int,
    base: float = 1.0,
    factor: float = 2.0,
    maximum: float = 30.0,
    jitter: bool = False,
) -> float:
    """Exponential backoff ``min(maximum, base * factor**(attempt-1))``.

    With ``jitter`` the result is spread by +/-25%.
    """
    delay = min(maximum, base * factor ** max(0, attempt - 1))
    if jitter:
        delay *= random.uniform(0.75, 1.25)
    return delay


def calculate_delay(policy: RetryPolicy, attempt: int) -> float:
    """Delay before retry number ``attempt`` (1-based) under ``policy``."""
    return compute_backoff(
        attempt,
        base=policy.base_delay,
        factor=policy.factor,
        maximum=policy.max_delay,
        jitter=policy.jitter,
    )
