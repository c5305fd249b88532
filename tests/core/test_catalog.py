# tests/core/test_catalog.py
"""Tests for the settings-backed project catalog."""

from migraflow.contracts import ProjectCatalog, TableKind
from migraflow.core.catalog import InMemoryProjectCatalog, SettingsProjectCatalog
from migraflow.core.config import MigraflowSettings, ProjectSettings, TableMappingSettings
from tests.conftest import make_project


class TestSettingsProjectCatalog:
    def test_projects_from_settings(self) -> None:
        settings = MigraflowSettings(
            projects={
                "crm": ProjectSettings(
                    name="Legacy CRM",
                    source_connection="legacy",
                    target_connection="warehouse",
                    tables=[
                        TableMappingSettings(source_table="orders", target_table="fact_order", kind=TableKind.FACT, order=1),
                        TableMappingSettings(source_table="old", target_table="dim_old", kind=TableKind.DIMENSION, active=False),
                    ],
                )
            }
        )

        catalog = SettingsProjectCatalog.from_settings(settings)
        project = catalog.get_project("crm")

        assert isinstance(catalog, ProjectCatalog)
        assert project is not None
        assert project.name == "Legacy CRM"
        assert [t.target_table for t in project.tables] == ["fact_order", "dim_old"]
        assert [t.target_table for t in project.active_tables] == ["fact_order"]
        assert catalog.project_ids() == ["crm"]
        assert catalog.get_project("other") is None


class TestInMemoryProjectCatalog:
    def test_add_and_get(self) -> None:
        catalog = InMemoryProjectCatalog()
        assert catalog.get_project("crm") is None

        catalog.add(make_project())

        assert catalog.get_project("crm") == make_project()
