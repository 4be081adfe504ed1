"""Tests for YAML seed loading."""

import pytest

from chime.scheduling.errors import ConfigurationError
from chime.tasks.loader import build_aggregates, load_seed_file, read_seed_file

SEED = """
groups:
  - {id: ops, name: Operations}
tasks:
  - id: standup
    name: Daily standup
    priority: high
    group_id: ops
    rules:
      - {rule_type: by_day, execution_times: ["09:00"]}
    notification:
      webhook_url: https://hooks.example.com/robot/send?access_token=abc
      message_template: "{{ task_name }} starts now"
  - id: retro
    name: Retro
    rules:
      - {rule_type: by_week, day_mode: {weekdays: [5]}, execution_times: ["16:00"]}
associations:
  - {primary_task_id: standup, associated_task_id: retro, relationship_type: mutual_exclusive}
"""


@pytest.fixture
def seed_file(tmp_path):
    path = tmp_path / "tasks.yaml"
    path.write_text(SEED)
    return path


class TestReadSeedFile:
    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Cannot read seed file"):
            read_seed_file(tmp_path / "missing.yaml")

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("tasks: [unclosed")
        with pytest.raises(ConfigurationError):
            read_seed_file(path)

    def test_top_level_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            read_seed_file(path)

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert read_seed_file(path) == {}


class TestBuildAggregates:
    def test_builds_tasks_with_associations(self, seed_file):
        aggregates = {a.id: a for a in build_aggregates(read_seed_file(seed_file))}
        assert set(aggregates) == {"standup", "retro"}
        assert aggregates["standup"].associated_task_ids() == {"retro"}
        assert aggregates["retro"].notification_config is None

    def test_invalid_rule_rejects_document(self):
        data = {"tasks": [{"id": "t", "name": "T", "rules": [{"rule_type": "by_interval"}]}]}
        with pytest.raises(ConfigurationError):
            build_aggregates(data)

    def test_duplicate_task_id(self):
        data = {"tasks": [{"id": "t", "name": "A"}, {"id": "t", "name": "B"}]}
        with pytest.raises(ConfigurationError, match="Duplicate task id"):
            build_aggregates(data)

    def test_unknown_associated_task(self):
        data = {
            "tasks": [{"id": "a", "name": "A"}],
            "associations": [{"primary_task_id": "a", "associated_task_id": "ghost", "relationship_type": "mutual_exclusive"}],
        }
        with pytest.raises(ConfigurationError, match="Associated task not found"):
            build_aggregates(data)
        assert build_aggregates(data, known_task_ids={"ghost"})[0].associated_task_ids() == {"ghost"}

    def test_primary_must_be_in_file(self):
        data = {
            "tasks": [{"id": "a", "name": "A"}],
            "associations": [{"primary_task_id": "z", "associated_task_id": "a", "relationship_type": "mutual_exclusive"}],
        }
        with pytest.raises(ConfigurationError, match="primary task"):
            build_aggregates(data)


class TestLoadSeedFile:
    def test_stores_everything(self, db, manager, seed_file):
        created = load_seed_file(seed_file, manager, db.task_repo)

        assert sorted(created) == ["retro", "standup"]
        assert db.task_repo.get_group("ops").name == "Operations"
        standup = manager.load("standup")
        assert standup.task.group_id == "ops"
        assert standup.notification_config.message_template == "{{ task_name }} starts now"
        assert [a.primary_task_id for a in manager.load("retro").associations] == ["standup"]

    def test_existing_tasks_are_not_overwritten(self, db, manager, seed_file):
        load_seed_file(seed_file, manager, db.task_repo)
        with pytest.raises(ConfigurationError, match="already exist"):
            load_seed_file(seed_file, manager, db.task_repo)

    def test_nothing_written_on_error(self, db, manager, tmp_path):
        path = tmp_path / "tasks.yaml"
        path.write_text(SEED.replace('execution_times: ["16:00"]', 'execution_times: ["25:00"]'))
        with pytest.raises(ConfigurationError):
            load_seed_file(path, manager, db.task_repo)
        assert manager.get_all() == []
        assert db.task_repo.get_group("ops") is None

    def test_invalid_group(self, db, manager, tmp_path):
        path = tmp_path / "tasks.yaml"
        path.write_text("groups:\n  - {id: ops, name: Ops, status: archived}\n")
        with pytest.raises(ConfigurationError, match="Invalid task group"):
            load_seed_file(path, manager, db.task_repo)
