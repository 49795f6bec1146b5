import pytest

from community_indexer.actors import ActorProvisioner
from community_indexer.router import EventRouter
from tests.helpers import MemoryMirror


@pytest.fixture
def mirror():
    """Fresh in-memory mirror"""
    return MemoryMirror()


@pytest.fixture
def actors():
    return ActorProvisioner()


@pytest.fixture
def router(actors):
    return EventRouter.default(actors)


@pytest.fixture
def apply(mirror, router):
    """Dispatch envelopes one at a time, each in its own session"""
    async def _apply(*envelopes):
        for envelope in envelopes:
            async with mirror.session() as store:
                await router.dispatch(envelope, store)
    return _apply
