import asyncio
from typing import Any, Callable

from sqlalchemy.orm import Session


async def run_with_session(session_factory: Callable[[], Session], fn: Callable[..., Any], *args, **kwargs) -> Any:
    """Run a blocking store call in the default worker pool with its own session."""

    def _call():
        db = session_factory()
        try:
            return fn(db, *args, **kwargs)
        finally:
            db.close()

    return await asyncio.to_thread(_call)
