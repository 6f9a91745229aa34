from pathlib import Path

from watch_ai.prompt import (
    EditorContext,
    TemplateLoader,
    build_system_prompt,
    project_structure,
)


def test_project_structure_draws_tree_and_skips_ignored(tmp_path: Path):
    (tmp_path / "src" / "lib").mkdir(parents=True)
    (tmp_path / "src" / "lib" / "deep").mkdir()
    (tmp_path / "src" / "lib" / "deep" / "too_deep.py").write_text("", encoding="utf-8")
    (tmp_path / "src" / "main.py").write_text("", encoding="utf-8")
    (tmp_path / ".git").mkdir()
    (tmp_path / "README.md").write_text("", encoding="utf-8")

    tree = project_structure(tmp_path, ignore=[".git"])

    assert tree.splitlines() == [
        "├── README.md",
        "└── src",
        "    ├── lib",
        "    │   └── deep",
        "    └── main.py",
    ]


def test_project_structure_limits_entries_per_directory(tmp_path: Path):
    for i in range(30):
        (tmp_path / f"f{i:02d}.txt").write_text("", encoding="utf-8")

    tree = project_structure(tmp_path, ignore=[])

    assert len(tree.splitlines()) == 20


def test_editor_context_accepts_camel_case():
    context = EditorContext.from_dict({
        "activeFile": "a.py",
        "fileContent": "x = 1",
        "cursorLine": 4,
        "selectedText": "x",
        "openFiles": ["a.py", "b.py"],
    })
    assert context.active_file == "a.py"
    assert context.cursor_line == 4
    assert context.open_files == ["a.py", "b.py"]
    assert EditorContext.from_dict(None) is None


def test_build_system_prompt_truncates_large_content(tmp_path: Path):
    editor = EditorContext(
        active_file="big.js",
        file_content="x" * 13000,
        selected_text="y" * 600,
        open_files=["big.js"],
    )

    prompt = build_system_prompt(tmp_path, editor, include_structure=False)

    assert "x" * 12000 + "\n// ... (truncated)" in prompt
    assert "x" * 12001 not in prompt
    assert "y" * 500 in prompt
    assert "y" * 501 not in prompt
    assert "**Open Files:** big.js" in prompt


def test_build_system_prompt_without_editor(tmp_path: Path):
    prompt = build_system_prompt(tmp_path, None, include_structure=False)
    assert "**Active File:** None" in prompt
    assert "ACTIVE FILE CONTENT" not in prompt


def test_personal_template_overrides_packaged_one(tmp_path: Path):
    personal = tmp_path / "personal"
    personal.mkdir()
    (personal / "system_prompt.md").write_text("Custom for {workspace}; {unknown}", encoding="utf-8")

    loader = TemplateLoader(personal_dir=personal)
    prompt = build_system_prompt(tmp_path, None, loader=loader, include_structure=False)

    assert prompt == f"Custom for {tmp_path}; {{unknown}}"
