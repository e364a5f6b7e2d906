"""
1. conftest.py 会在测试运行时被 pytest 自动加载，对同级及子目录下的测试文件全局生效。
2. 把 src 目录加入模块搜索路径，测试里可以直接 `import perpetual_memory`。
3. 共享的 fixture 和记录构造函数也放在这里。
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# 添加 src 目录到 PYTHONPATH
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from perpetual_memory.memory.config import MemoryConfig  # noqa: E402
from perpetual_memory.models import CompressedMemoryEntry, MemoryEntry  # noqa: E402
from perpetual_memory.store import InMemoryRecordStore  # noqa: E402

BASE_TIME = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)

ARC = "User weighed cost against speed, picked the cheaper plan; persona agreed."


def at(minutes: int) -> datetime:
    return BASE_TIME + timedelta(minutes=minutes)


def make_turn(i: int, user_id: str = "user-1", persona: str = "ananya", starred: bool = False):
    return MemoryEntry(
        id=f"turn-{i:03d}",
        user_id=user_id,
        persona_name=persona,
        user_text=f"question {i}",
        response_text=f"answer {i}",
        created_at=at(i),
        is_starred=starred,
    )


def make_compressed(
    i: int,
    user_id: str = "user-1",
    persona: str = "ananya",
    salience: int = 5,
    embedding=None,
    is_instruction: bool = False,
    scope=None,
    essence: str = "",
):
    return CompressedMemoryEntry(
        id=f"mem-{i:03d}",
        user_id=user_id,
        persona_name=persona,
        user_essence=essence or f"asked about topic {i}",
        response_essence=f"explained topic {i}",
        arc_summary=ARC,
        salience=salience,
        is_instruction=is_instruction,
        instruction_scope=scope,
        embedding=embedding,
        created_at=at(i),
    )


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def config():
    return MemoryConfig(context_window=1_000_000, retry_base_delay=0.0)
