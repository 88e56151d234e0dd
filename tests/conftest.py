"""Shared fixtures for the A2A runtime tests."""

import pytest

from a2a_runtime.sample_executors import CurrencyExecutor, HelloWorldExecutor
from a2a_runtime.streaming_manager import StreamingManager
from a2a_runtime.task_manager import TaskManager
from a2a_runtime.task_store import InMemoryTaskStore

from helpers import GatedExecutor


@pytest.fixture
def store():
    return InMemoryTaskStore()


@pytest.fixture
def streaming_manager():
    return StreamingManager(queue_size=8)


@pytest.fixture
def make_manager(store, streaming_manager):
    """Factory building a TaskManager around the shared store."""

    def factory(executor, **kwargs):
        kwargs.setdefault("streaming_manager", streaming_manager)
        task_store = kwargs.pop("store", store)
        return TaskManager(task_store, executor, **kwargs)

    return factory


@pytest.fixture
def hello_manager(make_manager):
    return make_manager(HelloWorldExecutor())


@pytest.fixture
def currency_manager(make_manager):
    return make_manager(CurrencyExecutor())


@pytest.fixture
def gated_executor():
    return GatedExecutor()
