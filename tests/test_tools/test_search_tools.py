from pathlib import Path

import pytest

from watch_ai.tools.search import FileSearchTool, ListDirTool, SearchTextTool


def _make_tree(root: Path) -> None:
    (root / "src" / "lib").mkdir(parents=True)
    (root / "node_modules" / "pkg").mkdir(parents=True)
    (root / "src" / "app.py").write_text("import os\nTODO = 'fix'\n", encoding="utf-8")
    (root / "src" / "lib" / "util.js").write_text("// TODO: speed up\nexport const x = 1;\n", encoding="utf-8")
    (root / "node_modules" / "pkg" / "index.js").write_text("TODO hidden\n", encoding="utf-8")
    (root / "README.md").write_text("# Demo\nSee TODO list.\n", encoding="utf-8")
    (root / "b.txt").write_text("", encoding="utf-8")


@pytest.mark.asyncio
async def test_list_dir_puts_directories_first_and_skips_ignored(config, workspace: Path):
    _make_tree(workspace)

    result = await ListDirTool().execute(_workspace_root=workspace)

    assert result.success is True
    assert [(e["name"], e["type"]) for e in result.entries] == [
        ("src", "dir"),
        ("b.txt", "file"),
        ("README.md", "file"),
    ]
    assert result.message == "Found 3 items in ."
    assert "children" not in result.entries[0]


@pytest.mark.asyncio
async def test_list_dir_recursive_includes_children(config, workspace: Path):
    _make_tree(workspace)

    result = await ListDirTool().execute(path="src", recursive=True, _workspace_root=workspace)

    lib = result.entries[0]
    assert lib["name"] == "lib"
    assert lib["path"] == "src/lib"
    assert [c["name"] for c in lib["children"]] == ["util.js"]


@pytest.mark.asyncio
async def test_list_dir_on_file_is_io_error(config, workspace: Path):
    _make_tree(workspace)
    result = await ListDirTool().execute(path="README.md", _workspace_root=workspace)
    assert result.error_kind == "io_error"


@pytest.mark.asyncio
async def test_search_text_is_case_sensitive_and_skips_ignored(config, workspace: Path):
    _make_tree(workspace)

    result = await SearchTextTool().execute(query="TODO", _workspace_root=workspace)

    files = sorted(r["file"] for r in result.results)
    assert files == ["README.md", "src/app.py", "src/lib/util.js"]
    util = next(r for r in result.results if r["file"] == "src/lib/util.js")
    assert util["line"] == 1
    assert util["snippet"] == "// TODO: speed up"

    lower = await SearchTextTool().execute(query="todo", _workspace_root=workspace)
    assert lower.count == 0


@pytest.mark.asyncio
async def test_search_text_file_pattern_and_result_cap(config, workspace: Path):
    _make_tree(workspace)
    for i in range(30):
        (workspace / f"gen_{i:02d}.py").write_text("needle\n", encoding="utf-8")

    suffix = await SearchTextTool().execute(query="TODO", file_pattern=".js", _workspace_root=workspace)
    assert [r["file"] for r in suffix.results] == ["src/lib/util.js"]

    capped = await SearchTextTool().execute(query="needle", _workspace_root=workspace)
    assert capped.count == 20


@pytest.mark.asyncio
async def test_search_text_truncates_snippets(config, workspace: Path):
    (workspace / "long.txt").write_text("   " + "x" * 300 + " needle\n", encoding="utf-8")

    result = await SearchTextTool().execute(query="needle", _workspace_root=workspace)

    assert len(result.results[0]["snippet"]) == 100


@pytest.mark.asyncio
async def test_search_text_rejects_empty_query(config, workspace: Path):
    result = await SearchTextTool().execute(query="", _workspace_root=workspace)
    assert result.error_kind == "validation_error"


@pytest.mark.asyncio
async def test_file_search_ranks_name_matches_before_path_and_fuzzy_ones(config, workspace: Path):
    _make_tree(workspace)
    (workspace / "apps").mkdir()
    (workspace / "apps" / "notes.txt").write_text("", encoding="utf-8")

    result = await FileSearchTool().execute(query="app", _workspace_root=workspace)
    assert result.files == ["src/app.py", "apps/notes.txt"]

    fuzzy = await FileSearchTool().execute(query="slu", _workspace_root=workspace)
    assert fuzzy.files == ["src/lib/util.js"]

    hidden = await FileSearchTool().execute(query="index", _workspace_root=workspace)
    assert hidden.files == []


@pytest.mark.asyncio
async def test_file_search_caps_results_and_rejects_empty_query(config, workspace: Path):
    for i in range(12):
        (workspace / f"module_{i:02d}.py").write_text("", encoding="utf-8")

    result = await FileSearchTool().execute(query="module", _workspace_root=workspace)
    assert result.count == 10
    assert result.files[0] == "module_00.py"

    empty = await FileSearchTool().execute(query="  ", _workspace_root=workspace)
    assert empty.error_kind == "validation_error"
