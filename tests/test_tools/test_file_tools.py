from pathlib import Path

import pytest

from watch_ai.exceptions import PathOutsideWorkspaceError
from watch_ai.tools.files import DeleteFileTool, EditFileTool, ReadFileTool, WriteFileTool


@pytest.mark.asyncio
async def test_read_file_returns_content_and_line_count(config, workspace: Path):
    (workspace / "notes.txt").write_text("line1\nline2\nline3\n", encoding="utf-8")

    result = await ReadFileTool().execute(path="notes.txt", _workspace_root=workspace)

    assert result.success is True
    assert result.content == "line1\nline2\nline3\n"
    assert result.total_lines == 3
    assert result.path == "notes.txt"


@pytest.mark.asyncio
async def test_read_file_line_range(config, workspace: Path):
    (workspace / "notes.txt").write_text("a\nb\nc\nd\n", encoding="utf-8")

    result = await ReadFileTool().execute(
        path="notes.txt", start_line=2, end_line=3, _workspace_root=workspace
    )

    assert result.content == "b\nc"
    assert "lines 2-3 of 4" in result.message


@pytest.mark.asyncio
async def test_read_missing_file_is_not_found(config, workspace: Path):
    result = await ReadFileTool().execute(path="missing.txt", _workspace_root=workspace)
    assert result.success is False
    assert result.error_kind == "not_found"


@pytest.mark.asyncio
async def test_read_file_rejects_paths_outside_workspace(config, workspace: Path):
    with pytest.raises(PathOutsideWorkspaceError):
        await ReadFileTool().execute(path="../secret.txt", _workspace_root=workspace)


@pytest.mark.asyncio
async def test_read_file_over_size_limit_is_io_error(config, workspace: Path):
    config.tools.max_read_bytes = 10
    (workspace / "big.txt").write_text("x" * 50, encoding="utf-8")

    result = await ReadFileTool().execute(path="big.txt", _workspace_root=workspace)

    assert result.success is False
    assert result.error_kind == "io_error"


@pytest.mark.asyncio
async def test_write_file_creates_parents_and_reports_lines(config, workspace: Path):
    tool = WriteFileTool()
    created = await tool.execute(path="src/new/app.py", content="a\nb\nc", _workspace_root=workspace)

    assert created.success is True
    assert created.is_new is True
    assert created.lines_written == 3
    assert created.message == "Created src/new/app.py (3 lines)"
    assert (workspace / "src" / "new" / "app.py").read_text(encoding="utf-8") == "a\nb\nc"

    updated = await tool.execute(path="src/new/app.py", content="x\n", _workspace_root=workspace)
    assert updated.is_new is False
    assert updated.message == "Updated src/new/app.py (1 lines)"


@pytest.mark.asyncio
async def test_edit_file_replaces_first_occurrence_only(config, workspace: Path):
    target = workspace / "app.py"
    target.write_text("x = 1\nx = 1\n", encoding="utf-8")

    result = await EditFileTool().execute(
        path="app.py", old_text="x = 1", new_text="x = 2", _workspace_root=workspace
    )

    assert result.success is True
    assert result.occurrences == 2
    assert target.read_text(encoding="utf-8") == "x = 2\nx = 1\n"


@pytest.mark.asyncio
async def test_edit_file_missing_text_leaves_file_unchanged(config, workspace: Path):
    target = workspace / "app.py"
    target.write_text("print('hi')\n", encoding="utf-8")

    result = await EditFileTool().execute(
        path="app.py", old_text="print('bye')", new_text="pass", _workspace_root=workspace
    )

    assert result.success is False
    assert result.error_kind == "not_found"
    assert "Read the file first" in result.error
    assert target.read_text(encoding="utf-8") == "print('hi')\n"


@pytest.mark.asyncio
async def test_edit_file_rejects_empty_old_text(config, workspace: Path):
    (workspace / "app.py").write_text("x", encoding="utf-8")
    result = await EditFileTool().execute(
        path="app.py", old_text="", new_text="y", _workspace_root=workspace
    )
    assert result.error_kind == "validation_error"


@pytest.mark.asyncio
async def test_delete_file_and_directory(config, workspace: Path):
    (workspace / "old.txt").write_text("bye", encoding="utf-8")
    (workspace / "build" / "out").mkdir(parents=True)
    (workspace / "build" / "out" / "a.o").write_text("", encoding="utf-8")
    tool = DeleteFileTool()

    file_result = await tool.execute(path="old.txt", _workspace_root=workspace)
    dir_result = await tool.execute(path="build", _workspace_root=workspace)

    assert file_result.success is True
    assert dir_result.success is True
    assert not (workspace / "old.txt").exists()
    assert not (workspace / "build").exists()


@pytest.mark.asyncio
async def test_delete_refuses_workspace_root_and_missing_paths(config, workspace: Path):
    tool = DeleteFileTool()

    root_result = await tool.execute(path=".", _workspace_root=workspace)
    missing = await tool.execute(path="ghost.txt", _workspace_root=workspace)

    assert root_result.error_kind == "validation_error"
    assert workspace.exists()
    assert missing.error_kind == "io_error"
