"""Settings-backed project catalog.

Deployments that own a CRUD layer for projects implement ProjectCatalog
against it; the CLI and tests use this one, built from the ``projects``
section of settings.
"""

from collections.abc import Mapping

from migraflow.contracts.catalog import ProjectDefinition, TableMapping
from migraflow.core.config import MigraflowSettings, ProjectSettings


class SettingsProjectCatalog:
    """ProjectCatalog over the ``projects`` settings section."""

    def __init__(self, projects: Mapping[str, ProjectSettings]) -> None:
        self._projects = {project_id: _to_definition(project_id, settings) for project_id, settings in projects.items()}

    @classmethod
    def from_settings(cls, settings: MigraflowSettings) -> "SettingsProjectCatalog":
        return cls(settings.projects)

    def get_project(self, project_id: str) -> ProjectDefinition | None:
        return self._projects.get(project_id)

    def project_ids(self) -> list[str]:
        return sorted(self._projects)


class InMemoryProjectCatalog:
    """Mutable catalog for embedding callers and tests."""

    def __init__(self, *projects: ProjectDefinition) -> None:
        self._projects = {project.project_id: project for project in projects}

    def add(self, project: ProjectDefinition) -> None:
        self._projects[project.project_id] = project

    def get_project(self, project_id: str) -> ProjectDefinition | None:
        return self._projects.get(project_id)


def _to_definition(project_id: str, settings: ProjectSettings) -> ProjectDefinition:
    return ProjectDefinition(
        project_id=project_id,
        name=settings.name,
        source_connection=settings.source_connection,
        target_connection=settings.target_connection,
        tables=tuple(
            TableMapping(
                source_table=table.source_table,
                target_table=table.target_table,
                kind=table.kind,
                order=table.order,
                active=table.active,
            )
            for table in settings.tables
        ),
    )
