from pathlib import Path

import pytest

from stagegate.config import Conventions
from stagegate.errors import ConfigurationError, CyclicPipelineError
from stagegate.loader import load_pipeline, load_profiles, pipeline_from_dict, profile_from_dict
from stagegate.policy import ActionRequest, evaluate

CONVENTIONS = Conventions.from_dict({"source": "app", "tests": "spec", "docs": "docs"})


def test_markdown_profile_frontmatter(tmp_path: Path) -> None:
    (tmp_path / "writer.md").write_text(
        "+++\n"
        'actor = "writer-1"\n'
        'role = "spec-writer"\n'
        'tools = ["write_file"]\n'
        'command = "writer-bot --json"\n'
        "[[fs]]\n"
        'glob = "{docs}/**"\n'
        'mode = "write"\n'
        "+++\n"
        "\n# Writer\n\nFree-form guidance.\n",
        encoding="utf-8",
    )

    profiles = load_profiles(tmp_path, CONVENTIONS)

    profile = profiles["spec-writer"]
    assert profile.actor_id == "writer-1"
    assert profile.command == ("writer-bot", "--json")
    assert evaluate(profile, ActionRequest("fs", "docs/login.md", mode="write")).allowed


def test_permission_tiers_map_to_effects() -> None:
    profile = profile_from_dict(
        {
            "actor": "impl-1",
            "role": "implementer",
            "fs": [{"glob": "{source}/**", "mode": "write"}],
            "permissions": {
                "always": ["pytest*"],
                "ask_first": ["git commit*"],
                "never": ["git push*"],
            },
        },
        CONVENTIONS,
    )

    assert profile.fs_scopes[0].glob == "app/**"
    assert evaluate(profile, ActionRequest("command", "pytest -q")).allowed
    assert evaluate(profile, ActionRequest("command", "git commit -m x")).requires_confirmation
    assert evaluate(profile, ActionRequest("command", "git push")).denied


def test_unknown_permission_tier_is_rejected() -> None:
    with pytest.raises(ConfigurationError, match="unknown permission tier"):
        profile_from_dict(
            {"actor": "a", "role": "r", "permissions": {"sometimes": ["ls"]}},
            CONVENTIONS,
        )


def test_duplicate_roles_are_rejected(tmp_path: Path) -> None:
    for name in ("one", "two"):
        (tmp_path / f"{name}.toml").write_text(
            f'actor = "{name}"\nrole = "reviewer"\n', encoding="utf-8"
        )

    with pytest.raises(ConfigurationError, match="already defined"):
        load_profiles(tmp_path, CONVENTIONS)


def test_pipeline_document_expands_conventions(tmp_path: Path) -> None:
    path = tmp_path / "pipeline.toml"
    path.write_text(
        'name = "tdd"\n'
        'terminal = "green"\n'
        "\n"
        "[[stages]]\n"
        'id = "red"\n'
        'role = "test-writer"\n'
        'actions = [{ kind = "fs", target = "{tests}/test_login.py", mode = "write" }]\n'
        "\n"
        "[[stages]]\n"
        'id = "green"\n'
        'role = "implementer"\n'
        'after = ["red"]\n'
        'gate = { kind = "boolean" }\n'
        'retry_from = "red"\n'
        "max_retries = 1\n"
        "timeout_seconds = 30\n",
        encoding="utf-8",
    )

    graph = load_pipeline(path, CONVENTIONS)

    assert graph.name == "tdd"
    assert graph.get("red").actions == (ActionRequest("fs", "spec/test_login.py", mode="write"),)
    green = graph.get("green")
    assert green.predecessors == frozenset({"red"})
    assert green.gate is not None and green.gate.kind == "boolean"
    assert green.retry_from == "red"
    assert green.max_retries == 1
    assert green.timeout_seconds == 30.0


def test_cyclic_pipeline_document_is_rejected() -> None:
    with pytest.raises(CyclicPipelineError):
        pipeline_from_dict(
            {
                "stages": [
                    {"id": "a", "role": "x", "after": ["b"]},
                    {"id": "b", "role": "x", "after": ["a"]},
                ]
            },
            CONVENTIONS,
        )


def test_unterminated_frontmatter_is_rejected(tmp_path: Path) -> None:
    (tmp_path / "broken.md").write_text('+++\nactor = "x"\n', encoding="utf-8")

    with pytest.raises(ConfigurationError, match="unterminated"):
        load_profiles(tmp_path, CONVENTIONS)
