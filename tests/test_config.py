from pathlib import Path

from edpsych_maintenance.config import get_default_config, load_config, resolve_config


def test_missing_file_uses_defaults(tmp_path):
    assert load_config(str(tmp_path / 'absent.yaml')) == get_default_config()


def test_partial_file_is_merged_over_defaults(tmp_path):
    path = tmp_path / 'maintenance.yaml'
    path.write_text(
        "database:\n"
        "  path: /srv/edpsych/edpsych.db\n"
        "repair:\n"
        "  auto_repair: true\n"
        "alerts:\n"
        "  webhook_url: https://hooks.example.test/maintenance\n"
    )

    config = load_config(str(path))

    assert config['database']['path'] == '/srv/edpsych/edpsych.db'
    assert config['repair']['auto_repair'] is True
    assert config['repair']['strict_safety'] is True
    assert config['alerts']['webhook_url'] == 'https://hooks.example.test/maintenance'
    assert config['alerts']['timeout_seconds'] == 10


def test_invalid_yaml_uses_defaults(tmp_path):
    path = tmp_path / 'broken.yaml'
    path.write_text("database: [unclosed\n")

    assert load_config(str(path)) == get_default_config()


def test_non_mapping_uses_defaults(tmp_path):
    path = tmp_path / 'list.yaml'
    path.write_text("- one\n- two\n")

    assert load_config(str(path)) == get_default_config()


def test_resolve_config_does_not_share_state():
    first = resolve_config({'timeouts': {'check_seconds': 1}})
    first['integrity']['owned_models'].clear()

    second = resolve_config(None)

    assert second['timeouts']['check_seconds'] == 30
    assert len(second['integrity']['owned_models']) == 4


def test_example_config_matches_default_keys():
    config = load_config(str(Path(__file__).resolve().parents[1] / 'config' / 'maintenance.yaml'))

    assert set(config) == set(get_default_config())
