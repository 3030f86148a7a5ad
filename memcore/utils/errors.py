"""
Error taxonomy shared by the memcore engines and client wrappers.
"""


class MemcoreError(Exception):
    """Base exception for memcore errors."""
    pass


class ProviderError(MemcoreError):
    """Embedding or completion provider call failed. Always propagated to the caller."""
    pass


class ParseError(MemcoreError):
    """Structured LLM output could not be parsed."""
    pass


class NotFoundError(MemcoreError):
    """A referenced memory or entity does not exist for the owner."""
    pass


class ValidationError(MemcoreError):
    """Invalid argument or malformed reference."""
    pass


class StoreError(MemcoreError):
    """Fact store or cache operation failed."""
    pass


class OptimisticLockError(StoreError):
    """A versioned write lost against a concurrent writer."""
    pass


class RankingTimeoutError(MemcoreError):
    """Search did not complete before its deadline."""
    pass
