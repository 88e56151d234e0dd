"""
Tests for the bundled sample executors.
"""

import pytest

from a2a_runtime.a2a.models import DataPart, TaskState
from a2a_runtime.lifecycle import TaskUpdate
from a2a_runtime.sample_executors import (
    ASK_REQUEST,
    ASK_TARGET,
    CurrencyExecutor,
    HelloWorldExecutor,
    convert,
    create_executor,
    parse_conversion_request,
)

from helpers import make_params


def test_parse_conversion_request():
    assert parse_conversion_request(["convert 100 USD to gbp"]) == (100.0, ["USD", "GBP"])
    assert parse_conversion_request(["convert 2.5 EUR", "JPY please"]) == (2.5, ["EUR", "JPY"])
    assert parse_conversion_request(["hello there"]) == (None, [])
    # Three-letter words that are not known currencies are ignored
    assert parse_conversion_request(["the 5 USD"]) == (5.0, ["USD"])


def test_convert():
    assert convert(100, "USD", "USD") == 100
    assert round(convert(100, "USD", "GBP"), 2) == 79.0
    assert round(convert(92, "EUR", "USD"), 2) == 100.0


def test_create_executor():
    assert isinstance(create_executor("hello"), HelloWorldExecutor)
    assert isinstance(create_executor("currency"), CurrencyExecutor)
    with pytest.raises(ValueError, match="Unknown executor"):
        create_executor("bash")


@pytest.mark.asyncio
async def test_hello_world_send_returns_message():
    result = await HelloWorldExecutor().send_message(make_params("hi"), None)
    assert result.kind == "message"
    assert result.parts[0].text == "Hello World"


@pytest.mark.asyncio
async def test_hello_world_stream():
    updates = [u async for u in HelloWorldExecutor().stream_message(make_params("hi"), None)]
    assert [u.state for u in updates] == [TaskState.WORKING, TaskState.COMPLETED]
    assert [u.message.parts[0].text for u in updates] == ["Hello ", "World"]


@pytest.mark.asyncio
async def test_currency_asks_for_missing_information():
    executor = CurrencyExecutor()

    unclear = await executor.send_message(make_params("hello"), None)
    missing_target = await executor.send_message(make_params("convert 100 USD"), None)

    assert isinstance(unclear, TaskUpdate)
    assert unclear.state is TaskState.INPUT_REQUIRED
    assert unclear.message.parts[0].text == ASK_REQUEST
    assert missing_target.message.parts[0].text == ASK_TARGET


@pytest.mark.asyncio
async def test_currency_completes_with_artifact():
    result = await CurrencyExecutor().send_message(make_params("convert 100 USD to GBP"), None)

    assert result.state is TaskState.COMPLETED
    assert result.artifact.name == "conversion"
    data = next(part for part in result.artifact.parts if isinstance(part, DataPart)).data
    assert data["from"] == "USD"
    assert data["to"] == "GBP"
    assert data["result"] == 79.0


@pytest.mark.asyncio
async def test_currency_stream_emits_artifact_before_answer():
    executor = CurrencyExecutor()
    updates = [
        u async for u in executor.stream_message(make_params("convert 1 EUR to JPY"), None)
    ]

    assert [u.state for u in updates] == [
        TaskState.WORKING,
        TaskState.WORKING,
        TaskState.COMPLETED,
    ]
    assert updates[1].artifact is not None
    assert updates[2].message.final is True
