"""Project relationship index adapters."""

from ripplegate.index.project_index import FileProjectIndex, MappingProjectIndex, ProjectIndex

__all__ = ["FileProjectIndex", "MappingProjectIndex", "ProjectIndex"]
