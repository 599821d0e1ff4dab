from pathlib import Path

from opscrew.cli_utils.definitions import _format_definition_path, load_agents, load_workflows
from opscrew.cli_utils.fs import _iter_definition_files

FIXTURES = Path(__file__).parent.parent / "fixtures" / "definitions"


def test_iter_definition_files_respects_gitignore(tmp_path):
    (tmp_path / ".gitignore").write_text("drafts/\n*.tmp.yaml\n")
    (tmp_path / "drafts").mkdir()
    (tmp_path / "drafts" / "wip.yaml").write_text("{}")
    (tmp_path / "keep.yaml").write_text("{}")
    (tmp_path / "other.yml").write_text("{}")
    (tmp_path / "scratch.tmp.yaml").write_text("{}")
    (tmp_path / "notes.txt").write_text("not yaml")

    found = [p.name for p in _iter_definition_files(tmp_path)]
    assert found == ["keep.yaml", "other.yml"]

    everything = {p.name for p in _iter_definition_files(tmp_path, respect_gitignore=False)}
    assert everything == {"wip.yaml", "keep.yaml", "other.yml", "scratch.tmp.yaml"}


def test_single_file_is_yielded():
    path = FIXTURES / "onboarding.yaml"
    assert list(_iter_definition_files(path)) == [path]


def test_load_workflows_from_fixture():
    loaded, errors = load_workflows([FIXTURES / "onboarding.yaml"])
    assert errors == []
    [(path, workflow)] = loaded
    assert workflow.id == "client-onboarding"
    assert [s.id for s in workflow.sorted_steps()] == ["intake", "research", "kickoff"]


def test_load_agents_from_list_document():
    loaded, errors = load_agents([FIXTURES / "agents.yaml"])
    assert errors == []
    assert {agent.id for _, agent in loaded} == {"agent-intake", "agent-research", "agent-pm"}


def test_load_errors_are_collected(tmp_path):
    bad_yaml = tmp_path / "bad.yaml"
    bad_yaml.write_text("steps: [unclosed")
    bad_model = tmp_path / "model.yaml"
    bad_model.write_text("id: wf\nsteps:\n  - id: a\n")
    scalar = tmp_path / "scalar.yaml"
    scalar.write_text("just a string")

    loaded, errors = load_workflows([bad_yaml, bad_model, scalar])
    assert loaded == []
    assert [path.name for path, _ in errors] == ["bad.yaml", "model.yaml", "scalar.yaml"]


def test_format_definition_path(tmp_path):
    nested = tmp_path / "flows" / "a.yaml"
    nested.parent.mkdir()
    nested.write_text("{}")
    assert _format_definition_path(nested, tmp_path) == "./flows/a.yaml"
