import logging

import pytest

from app.views.artifacts import artifact_count_label
from app.views.defects import report_subtitle
from app.views.progress import progress_label
from yara_wizard_core.log_setup import setup_logging
from yara_wizard_core.models import Rule


def test_labels():
    assert artifact_count_label(0) == "No artifact selected."
    assert artifact_count_label(1) == "1 artifact selected"
    assert artifact_count_label(3) == "3 artifacts selected"
    assert report_subtitle(0) == "YaraWizard has found no defects during analysis."
    assert report_subtitle(4) == "YaraWizard has found 4 defects during analysis."
    assert progress_label(0, 2) == "Processing artifact 1 of 2"
    assert progress_label(2, 2) == "Processing artifact 2 of 2"


def test_load_settings_merges_defaults(tmp_path):
    from wizard_tui import load_settings

    cfg = tmp_path / "settings.yaml"
    cfg.write_text("workspace_path: ws\nmax_file_mb: 5\n")
    settings = load_settings(cfg)
    assert settings["max_file_mb"] == 5
    assert settings["rules_path"] == "yara_rules"
    assert settings["log_file"].endswith("wizard.log")

    defaults = load_settings(tmp_path / "missing.yaml")
    assert defaults["workspace_path"] == "workspace"


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for h in root.handlers:
        if h not in handlers:
            h.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def test_setup_logging_writes_to_file(tmp_path, restore_root_logging):
    log_file = tmp_path / "logs" / "wizard.log"
    setup_logging("DEBUG", str(log_file))
    logging.getLogger("app.services.tasks").debug("hello from the wizard")
    for h in logging.getLogger().handlers:
        h.flush()
    assert "hello from the wizard" in log_file.read_text()


def test_rule_label_shows_the_description():
    from app.views.ruleset import RuleTree

    rule = Rule(name="EicarString", namespace="test", description="EICAR [test] string")
    assert RuleTree._rule_label(rule) == "(x) EicarString [dim]EICAR \\[test] string[/dim]"
    rule.enabled = False
    rule.description = ""
    assert RuleTree._rule_label(rule) == "( ) EicarString"
