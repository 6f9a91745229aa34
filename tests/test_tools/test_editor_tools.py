from pathlib import Path

import pytest

from watch_ai.tools.editor import (
    GetDiagnosticsTool,
    LanguageServices,
    NullLanguageServices,
    ViewOutlineTool,
)


class FakeServices:
    def __init__(self):
        self.paths: list[str] = []

    async def diagnostics(self, path):
        self.paths.append(path)
        return [{"line": 3, "severity": "error", "message": "undefined name 'foo'", "source": "pyflakes"}]

    async def outline(self, path):
        self.paths.append(path)
        return [{"name": "App", "kind": "class", "line": 1, "children": []}]


def test_fake_services_satisfy_protocol():
    assert isinstance(FakeServices(), LanguageServices)
    assert isinstance(NullLanguageServices(), LanguageServices)


@pytest.mark.asyncio
async def test_tools_without_editor_report_nothing_available(config, workspace: Path):
    diagnostics = await GetDiagnosticsTool().execute(path="app.py", _workspace_root=workspace)
    outline = await ViewOutlineTool().execute(path="app.py", _workspace_root=workspace)

    assert diagnostics.success is True
    assert diagnostics.diagnostics == []
    assert diagnostics.message == "No diagnostics available for app.py"
    assert outline.symbols == []


@pytest.mark.asyncio
async def test_tools_forward_absolute_paths_to_services(config, workspace: Path):
    services = FakeServices()

    diagnostics = await GetDiagnosticsTool(services).execute(path="src/app.py", _workspace_root=workspace)
    outline = await ViewOutlineTool(services).execute(path="src/app.py", _workspace_root=workspace)

    expected = str((workspace / "src" / "app.py").resolve())
    assert services.paths == [expected, expected]
    assert diagnostics.message == "1 problems in src/app.py"
    assert diagnostics.diagnostics[0]["severity"] == "error"
    assert outline.symbols[0]["name"] == "App"
