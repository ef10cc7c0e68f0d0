"""
Exception taxonomy for the insight engine.

Empty or blank input is not an error: every entry point returns an empty
list for it.  The classes below cover the failures that *are* raised and
say where they are absorbed:

DependencyError     a context store or ontology endpoint failed or timed out;
                    isolated per call, logged, contributes nothing.
ComputationError    a malformed candidate or path; dropped at its own scope.

Anything else escaping a detector is treated as catastrophic and the
detector falls back (direct pairs for links, empty for gaps and rankings).
"""
from __future__ import annotations


class InsightEngineError(Exception):
    """Base class for errors raised inside the engine."""


class DependencyError(InsightEngineError):
    """An external collaborator could not be reached or answered badly."""


class OntologyProviderError(DependencyError):
    """A SPARQL endpoint failed for one query."""

    def __init__(self, source: str, message: str) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source


class ContextStoreError(DependencyError):
    """The context store failed for one concept (not raised for "no match")."""


class ComputationError(InsightEngineError):
    """A candidate gap or link could not be built from the data at hand."""
