"""
Scoped network namespace entry.
setns() only affects the calling thread, so callers must not suspend (await)
while inside the namespace.
"""
import logging
from contextlib import contextmanager
from typing import Iterator

from pyroute2 import netns

logger = logging.getLogger(__name__)


@contextmanager
def entered(name: str) -> Iterator[None]:
    """
    Switch the calling thread into the named namespace and restore the
    previous one on every exit path. A missing namespace raises OSError
    (ENOENT) instead of being created.
    """
    netns.pushns()
    try:
        netns.setns(name, flags=0)
        logger.debug("Entered netns %s", name)
        yield
    finally:
        netns.popns()
        logger.debug("Left netns %s", name)
