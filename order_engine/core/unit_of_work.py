import asyncio
import logging
from typing import Callable, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from order_engine.core.errors import ConcurrencyConflictError, Unavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class UnitOfWork:
    """
    Runs a piece of work inside exactly one database transaction.

    The work callable receives a fresh session; it is committed when the
    callable returns and rolled back on any exception, so partial writes are
    never observable. Optimistic-lock conflicts are retried with a short
    backoff; every other error propagates unchanged. Each attempt runs on a
    worker thread so blocking driver calls never stall the event loop.
    """

    def __init__(self, session_factory: sessionmaker, max_retries: int = 3, retry_backoff: float = 0.01):
        self.session_factory = session_factory
        self.max_retries = max(1, max_retries)
        self.retry_backoff = retry_backoff

    async def run(self, work: Callable[[Session], T], description: str = "unit of work") -> T:
        for attempt in range(self.max_retries):
            try:
                return await asyncio.to_thread(self._run_once, work)
            except ConcurrencyConflictError as e:
                if attempt == self.max_retries - 1:
                    raise Unavailable(
                        f"Unable to complete {description} after {self.max_retries} attempts: {e}",
                        attempts=self.max_retries,
                    ) from e
                logger.warning(f"Concurrency conflict during {description} on attempt {attempt + 1}, retrying...")
                await asyncio.sleep(self.retry_backoff * (attempt + 1))

        raise Unavailable(f"Failed to complete {description}")

    def _run_once(self, work: Callable[[Session], T]) -> T:
        session = self.session_factory()
        try:
            result = work(session)
            session.commit()
            return result
        except OperationalError as e:
            session.rollback()
            logger.error(f"Store unavailable: {e}")
            raise Unavailable("Database is unavailable", error=str(e.orig)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
