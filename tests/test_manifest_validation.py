"""Tests for scheduled manifest validation and regeneration."""

import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from conftest import BASE_TIME, make_chunk
from indexer.store import InMemoryChunkStore
from manifests.manifest_builder import ManifestBuilder
from manifests.validation import ManifestValidator, ToolRef, ValidationStatus, structure_issues
from services.shared.models import FormatDetectionResult, PromptFormat

CURSOR = ToolRef(id="cursor", name="Cursor", docs_url="https://docs.example.com")
MARKDOWN_TEXT = "# Rules\n\n## Project rules\n\n- one\n- two\n\nSee [guide](https://docs.example.com/guide)"


async def seed_chunks(store, tool_id="cursor", version="latest"):
    await store.upsert_chunks([
        make_chunk(f"{tool_id}-{i}", f"{MARKDOWN_TEXT} {i}", tool_id=tool_id, version=version,
                   source_url=f"https://docs.example.com/page{i}")
        for i in range(3)
    ])


async def seed_manifest(store, tool_id="cursor", **changes):
    chunks = await store.chunks_for_tool(tool_id)
    detection = FormatDetectionResult(PromptFormat.MARKDOWN, 80, ["markdown-headings"])
    manifest = ManifestBuilder().build_manifest(tool_id, tool_id.title(), detection, chunks,
                                                docs_url="https://docs.example.com", now=BASE_TIME)
    manifest = replace(manifest, **changes)
    await store.save_manifest(manifest)
    return manifest


def validator(store, days_later=1, **kwargs):
    return ManifestValidator(store, clock=lambda: BASE_TIME + timedelta(days=days_later), **kwargs)


class TestValidateTool:
    """Single-tool validation outcomes."""

    @pytest.mark.asyncio
    async def test_fresh_manifest_is_valid(self, store):
        await seed_chunks(store)
        await seed_manifest(store)

        result = await validator(store).validate_tool(CURSOR)

        assert result.status == ValidationStatus.VALID
        assert result.issues == []

    @pytest.mark.asyncio
    async def test_missing_manifest_is_regenerated(self, store):
        await seed_chunks(store)

        result = await validator(store).validate_tool(CURSOR)

        assert result.status == ValidationStatus.REGENERATED
        assert "No manifest exists" in result.issues
        manifest = await store.get_manifest("cursor")
        assert manifest.name == "Cursor"
        assert manifest.preferred_format == PromptFormat.MARKDOWN
        assert manifest.last_updated == BASE_TIME + timedelta(days=1)

    @pytest.mark.asyncio
    async def test_stale_manifest_is_regenerated(self, store):
        await seed_chunks(store)
        await seed_manifest(store)

        result = await validator(store, days_later=120).validate_tool(CURSOR)

        assert result.status == ValidationStatus.REGENERATED
        assert any("older than 90 days" in issue for issue in result.issues)

    @pytest.mark.asyncio
    async def test_version_drift_is_detected(self, store):
        await seed_chunks(store, version="2.0")
        await seed_manifest(store, doc_version="1.0")

        result = await validator(store).validate_tool(CURSOR)

        assert "Documentation version has changed" in result.issues
        assert (await store.get_manifest("cursor")).doc_version == "2.0"

    @pytest.mark.asyncio
    async def test_mixed_page_versions_settle_after_one_regeneration(self, store):
        await seed_chunks(store, version="2.0")
        await store.upsert_chunks([make_chunk("cursor-old", f"{MARKDOWN_TEXT} old", version="1.9",
                                              source_url="https://docs.example.com/old")])
        await seed_manifest(store, doc_version="1.0")
        checker = validator(store)

        first = await checker.validate_tool(CURSOR)
        second = await checker.validate_tool(CURSOR)
        third = await checker.validate_tool(CURSOR)

        assert first.status == ValidationStatus.REGENERATED
        assert (await store.get_manifest("cursor")).doc_version == "2.0"
        assert second.status == ValidationStatus.VALID
        assert third.status == ValidationStatus.VALID

    @pytest.mark.asyncio
    async def test_dangling_sources_are_detected(self, store):
        await seed_chunks(store)
        manifest = await seed_manifest(store)
        await seed_manifest(store, doc_sources=manifest.doc_sources + ["https://docs.example.com/gone"])

        result = await validator(store).validate_tool(CURSOR)

        assert result.status == ValidationStatus.REGENERATED
        assert "1 doc sources no longer have stored chunks" in result.issues

    @pytest.mark.asyncio
    async def test_broken_template_is_detected(self, store):
        await seed_chunks(store)
        manifest = await seed_manifest(store)
        await seed_manifest(store, templates={**manifest.templates, "markdown": "no headers"})

        result = await validator(store).validate_tool(CURSOR)

        assert "Markdown template should contain headers" in result.issues

    @pytest.mark.asyncio
    async def test_no_chunks_fails(self, store):
        result = await validator(store).validate_tool(CURSOR)

        assert result.status == ValidationStatus.FAILED
        assert "No doc chunks" in result.error


class TestValidateAll:
    """Many tools, isolation and concurrency."""

    @pytest.mark.asyncio
    async def test_one_failure_does_not_affect_others(self, store):
        await seed_chunks(store, "cursor")
        await seed_manifest(store, "cursor")
        await seed_chunks(store, "windsurf")

        summary = await validator(store).validate_all([
            CURSOR, ToolRef("windsurf", "Windsurf"), ToolRef("empty", "Empty"),
        ])

        statuses = {r.tool_id: r.status for r in summary.results}
        assert statuses == {
            "cursor": ValidationStatus.VALID,
            "windsurf": ValidationStatus.REGENERATED,
            "empty": ValidationStatus.FAILED,
        }
        data = summary.to_dict()
        assert (data["total_tools"], data["valid"], data["regenerated"], data["failed"]) == (3, 1, 1, 1)

    @pytest.mark.asyncio
    async def test_defaults_to_stored_tools(self, store):
        await seed_chunks(store, "cursor")
        await seed_chunks(store, "windsurf")

        summary = await validator(store).validate_all()

        assert sorted(r.tool_id for r in summary.results) == ["cursor", "windsurf"]

    @pytest.mark.asyncio
    async def test_concurrency_is_capped(self):
        class SlowStore(InMemoryChunkStore):
            active = 0
            peak = 0

            async def get_manifest(self, tool_id):
                SlowStore.active += 1
                SlowStore.peak = max(SlowStore.peak, SlowStore.active)
                await asyncio.sleep(0.01)
                SlowStore.active -= 1
                return await super().get_manifest(tool_id)

        store = SlowStore()
        tools = [ToolRef(f"tool{i}", f"Tool {i}") for i in range(6)]
        for tool in tools:
            await seed_chunks(store, tool.id)

        await validator(store, concurrency=2).validate_all(tools)

        assert SlowStore.peak <= 2

    def test_invalid_concurrency(self, store):
        with pytest.raises(ValueError):
            ManifestValidator(store, concurrency=0)


class TestStructureIssues:
    """Structural checks on serialized manifests."""

    def test_missing_fields_and_bad_types(self):
        issues = structure_issues({"id": "cursor", "preferred_format": "yaml", "templates": {},
                                   "fallback_formats": "json"})

        assert "Missing required field: name" in issues
        assert "Unknown preferred_format: 'yaml'" in issues
        assert "templates object is empty" in issues
        assert "fallback_formats must be a list" in issues
