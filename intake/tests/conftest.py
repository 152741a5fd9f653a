from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from pathlib import Path

import pytest_asyncio

from core.config import AppConfig
from database.base import Database
from support import WizardStack, build_wizard_stack, open_database


@pytest_asyncio.fixture
async def database(tmp_path: Path) -> AsyncIterator[Database]:
    db = await open_database(tmp_path)
    try:
        yield db
    finally:
        await db.close()


@pytest_asyncio.fixture
async def stack_factory(tmp_path: Path) -> AsyncIterator[Callable[..., Awaitable[WizardStack]]]:
    built: list[WizardStack] = []

    async def build(config: AppConfig | None = None) -> WizardStack:
        workdir = tmp_path / f"stack-{len(built)}"
        workdir.mkdir()
        stack = await build_wizard_stack(workdir, config)
        built.append(stack)
        return stack

    try:
        yield build
    finally:
        for stack in built:
            await stack.db.close()


@pytest_asyncio.fixture
async def stack(stack_factory: Callable[..., Awaitable[WizardStack]]) -> WizardStack:
    return await stack_factory()
