"""
Tests for Stores

Tests for scriptflow/storage/stores.py and scriptflow/utils/file_utils.py
"""

import json

import pytest

from scriptflow.core.exceptions import StoreError
from scriptflow.storage.stores import (
    CacheStore,
    InMemoryCacheStore,
    InMemoryScriptStore,
    JSONFileCacheStore,
    JSONFileScriptStore,
    ScriptStore,
)
from scriptflow.utils.file_utils import read_json, read_text, safe_filename, write_json


class TestScriptStores:
    """Tests for both Script Store flavours."""

    @pytest.fixture(params=["memory", "json"])
    def store(self, request, temp_dir):
        if request.param == "memory":
            return InMemoryScriptStore()
        return JSONFileScriptStore(temp_dir)

    def test_protocol(self, store):
        assert isinstance(store, ScriptStore)

    @pytest.mark.asyncio
    async def test_missing_state(self, store):
        assert await store.get_parse_state("s1", "p1") is None

    @pytest.mark.asyncio
    async def test_update_sees_current_value(self, store):
        seen = []

        def mutator(current):
            seen.append(current)
            count = (current or {}).get("count", 0)
            return {"count": count + 1}

        await store.update_parse_state("s1", "p1", mutator)
        await store.update_parse_state("s1", "p1", mutator)

        assert seen == [None, {"count": 1}]
        assert await store.get_parse_state("s1", "p1") == {"count": 2}

    @pytest.mark.asyncio
    async def test_sessions_are_separate(self, store):
        await store.update_parse_state("s1", "p1", lambda _: {"v": 1})
        await store.update_parse_state("s1", "p2", lambda _: {"v": 2})

        assert (await store.get_parse_state("s1", "p1"))["v"] == 1
        assert (await store.get_parse_state("s1", "p2"))["v"] == 2

    @pytest.mark.asyncio
    async def test_mutator_returning_none(self, store):
        with pytest.raises(StoreError):
            await store.update_parse_state("s1", "p1", lambda _: None)

    @pytest.mark.asyncio
    async def test_returned_state_is_a_copy(self, store):
        await store.update_parse_state("s1", "p1", lambda _: {"items": [1]})
        state = await store.get_parse_state("s1", "p1")
        state["items"].append(2)

        assert (await store.get_parse_state("s1", "p1"))["items"] == [1]


class TestJSONFileScriptStore:
    """Tests for the on-disk layout."""

    @pytest.mark.asyncio
    async def test_file_layout(self, temp_dir):
        store = JSONFileScriptStore(temp_dir)
        await store.update_parse_state("s/1", "p1", lambda _: {"stage": "idle"})

        path = temp_dir / "projects" / "p1" / "scripts" / "s_1.json"
        document = json.loads(path.read_text(encoding="utf-8"))
        assert document["scriptId"] == "s/1"
        assert document["parseState"] == {"stage": "idle"}

    @pytest.mark.asyncio
    async def test_corrupt_file(self, temp_dir):
        store = JSONFileScriptStore(temp_dir)
        path = temp_dir / "projects" / "p1" / "scripts" / "s1.json"
        path.parent.mkdir(parents=True)
        path.write_text("[]", encoding="utf-8")

        with pytest.raises(StoreError):
            await store.get_parse_state("s1", "p1")


class TestCacheStores:
    """Tests for both Cache Store flavours."""

    @pytest.fixture(params=["memory", "json"])
    def store(self, request, temp_dir):
        if request.param == "memory":
            return InMemoryCacheStore()
        return JSONFileCacheStore(temp_dir)

    @pytest.mark.asyncio
    async def test_set_get_delete(self, store):
        assert isinstance(store, CacheStore)
        assert await store.get("mlc:l2:character:name=\"A\"") is None

        await store.set("mlc:l2:character:name=\"A\"", {"value": [1, 2]})
        assert await store.get("mlc:l2:character:name=\"A\"") == {"value": [1, 2]}

        await store.set("mlc:l2:character:name=\"A\"", None)
        assert await store.get("mlc:l2:character:name=\"A\"") is None

    @pytest.mark.asyncio
    async def test_deleting_missing_key(self, store):
        await store.set("nothing", None)

        assert await store.get("nothing") is None


class TestFileUtils:
    """Tests for file helpers."""

    def test_write_and_read_json(self, temp_dir):
        path = temp_dir / "nested" / "data.json"
        write_json(path, {"name": "灯塔"})

        assert read_json(path) == {"name": "灯塔"}
        assert list(path.parent.glob("*.tmp")) == []

    def test_unserializable(self, temp_dir):
        with pytest.raises(StoreError):
            write_json(temp_dir / "bad.json", {"value": object()})

    def test_missing_files(self, temp_dir):
        with pytest.raises(StoreError):
            read_json(temp_dir / "none.json")
        with pytest.raises(StoreError):
            read_text(temp_dir / "none.txt")

    @pytest.mark.parametrize("name,expected", [
        ("My Script", "My_Script"),
        ("a/b\\c", "a_b_c"),
        ("...", "unnamed"),
    ])
    def test_safe_filename(self, name, expected):
        assert safe_filename(name) == expected

    def test_script_with_byte_order_mark(self, temp_dir):
        path = temp_dir / "script.txt"
        path.write_bytes("\ufeffINT. DOCK - NIGHT".encode("utf-8"))

        assert read_text(path) == "INT. DOCK - NIGHT"

    def test_script_in_gb18030(self, temp_dir):
        path = temp_dir / "script.txt"
        path.write_bytes("第一章 灯塔".encode("gb18030"))

        assert read_text(path) == "第一章 灯塔"

    def test_undecodable_script(self, temp_dir):
        path = temp_dir / "script.bin"
        path.write_bytes(b"\xff\xfe\xfa")

        with pytest.raises(StoreError):
            read_text(path, encodings=("utf-8",))
