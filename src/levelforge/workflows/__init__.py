"""End-to-end workflows."""

from levelforge.workflows.adopted_scheme import AdoptedSchemeResult, build_adopted_scheme

__all__ = ["AdoptedSchemeResult", "build_adopted_scheme"]
