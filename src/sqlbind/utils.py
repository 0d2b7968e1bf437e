"""
Logging decorators for statement and query calls.
"""
import logging
import time
from functools import wraps
from typing import Any

logger = logging.getLogger(__name__)


def dumpsql(func):
    """Decorator for logging text queries."""
    @wraps(func)
    def wrapper(self, operation: str, *args: Any, **kwargs: Any):
        start = time.time()
        logger.debug(f'SQL:\n{operation}')
        try:
            return func(self, operation, *args, **kwargs)
        except Exception:
            logger.error(f'Error with query:\nSQL:\n{operation}')
            raise
        finally:
            logger.debug(f'Query time: {time.time() - start:.4f}s')
    return wrapper


def dumpstmt(func):
    """Decorator for logging prepared statement calls."""
    @wraps(func)
    def wrapper(self, *args: Any, **kwargs: Any):
        start = time.time()
        logger.debug(f'{func.__name__} statement {self.statement_id}:\n{self.query}')
        try:
            result = func(self, *args, **kwargs)
            logger.debug(f'{func.__name__} result: {result}, state {self.state.name}')
            return result
        except Exception:
            logger.error(f'Error with statement {self.statement_id}:\n{self.query}')
            raise
        finally:
            logger.debug(f'{func.__name__} time: {time.time() - start:.4f}s')
    return wrapper
