"""
Tests for loading and validating pipeline definition documents.
"""

import json

import pytest

from models.errors import CycleError, DefinitionError, DuplicateIdError
from models.schemas import SecretReference, StageKind
from utils.definitions import load_pipelines, parse_pipeline, referenced_secrets

from conftest import stage_doc


class TestParsePipeline:

    def test_valid_document(self):
        definition = parse_pipeline({
            "name": "web",
            "stages": [
                stage_doc("backend", kind="build-and-push",
                          params={"repository": "ghcr.io/acme/api"}),
                stage_doc("frontend", needs=["backend"]),
            ],
        })
        assert definition.name == "web"
        assert [s.id for s in definition.stages] == ["backend", "frontend"]
        assert definition.stages[0].kind is StageKind.BUILD_AND_PUSH
        assert definition.stages[1].needs == ("backend",)

    def test_secrets_default_to_pipeline_scope(self):
        definition = parse_pipeline({
            "name": "web",
            "stages": [stage_doc("a", secrets=["token", {"name": "other", "scope": "shared"}])],
        })
        assert definition.stages[0].secrets == (
            SecretReference("token", "web"),
            SecretReference("other", "shared"),
        )

    def test_cycle_rejected_before_any_run(self):
        with pytest.raises(CycleError):
            parse_pipeline({
                "name": "loop",
                "stages": [stage_doc("a", needs=["b"]), stage_doc("b", needs=["a"])],
            })

    def test_duplicate_id_rejected(self):
        with pytest.raises(DuplicateIdError):
            parse_pipeline({"name": "dup", "stages": [stage_doc("a"), stage_doc("a")]})

    def test_unknown_need_rejected(self):
        with pytest.raises(DefinitionError, match="unknown stage"):
            parse_pipeline({"name": "p", "stages": [stage_doc("a", needs=["ghost"])]})

    def test_unknown_kind_rejected(self):
        with pytest.raises(DefinitionError):
            parse_pipeline({"name": "p", "stages": [stage_doc("a", kind="teleport")]})

    def test_empty_pipeline_rejected(self):
        with pytest.raises(DefinitionError):
            parse_pipeline({"name": "p", "stages": []})

    def test_missing_kind_params_rejected(self):
        with pytest.raises(DefinitionError, match="host"):
            parse_pipeline({"name": "p", "stages": [
                stage_doc("deploy", kind="remote-deploy",
                          params={"image": "acme/api", "container_name": "api"}),
            ]})

    def test_undeclared_secret_reference_rejected(self):
        with pytest.raises(DefinitionError, match="db_url"):
            parse_pipeline({"name": "p", "stages": [
                stage_doc("deploy", kind="remote-deploy", params={
                    "host": "h", "image": "acme/api", "container_name": "api",
                    "env_secrets": {"DATABASE_URL": "db_url"},
                }),
            ]})

    def test_bad_tag_template_rejected(self):
        with pytest.raises(DefinitionError, match="tag_template"):
            parse_pipeline({"name": "p", "stages": [
                stage_doc("img", kind="build-and-push",
                          params={"repository": "acme/api", "tag_template": "{branch}"}),
            ]})

    def test_params_are_read_only(self):
        definition = parse_pipeline({"name": "p", "stages": [stage_doc("a")]})
        with pytest.raises(TypeError):
            definition.stages[0].params["distribution_id"] = "other"


def test_referenced_secrets():
    params = {
        "ssh_key_secret": "ssh_key",
        "env_secrets": {"A": "one"},
        "credentials": {"B": "two"},
        "host": "not-a-secret",
    }
    assert referenced_secrets(params) == {"ssh_key", "one", "two"}


def test_load_pipelines_from_directory(tmp_path):
    (tmp_path / "web.json").write_text(json.dumps({"name": "web", "stages": [stage_doc("a")]}))
    (tmp_path / "docs.json").write_text(json.dumps({"name": "docs", "stages": [stage_doc("b")]}))
    pipelines = load_pipelines(tmp_path)
    assert sorted(pipelines) == ["docs", "web"]


def test_load_pipelines_rejects_invalid_json(tmp_path):
    (tmp_path / "broken.json").write_text("{not json")
    with pytest.raises(DefinitionError):
        load_pipelines(tmp_path)


def test_bundled_example_pipeline_loads():
    import config
    pipelines = load_pipelines(config.PROJECT_ROOT / "pipelines")
    web = pipelines["web"]
    assert [s.kind.value for s in web.stages] == [
        "build-and-push", "remote-deploy", "artifact-sync", "cache-invalidate",
    ]
