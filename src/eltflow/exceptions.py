"""Exception classes for eltflow."""

from typing import List, Optional


class EltflowError(Exception):
    """Base exception for all eltflow errors."""

    pass


class ProjectNotFoundError(EltflowError):
    """Raised when a project directory is not found or invalid."""

    pass


class ConfigError(EltflowError):
    """Raised when configuration is invalid or missing."""

    pass


class ParseError(EltflowError):
    """Raised when declarations cannot be turned into a dependency graph.

    Load-time errors are fatal: no partial graph is ever returned.
    """

    pass


class DuplicateNameError(ParseError):
    """Raised when two declarations share a node name."""

    def __init__(self, name: str, locations: Optional[List[str]] = None):
        self.name = name
        self.locations = locations or []
        detail = f' (declared in {", ".join(self.locations)})' if self.locations else ''
        super().__init__(f'duplicate name "{name}"{detail}')


class UnresolvedReferenceError(ParseError):
    """Raised when a template references a model or source that is not declared."""

    def __init__(self, reference: str, referenced_by: Optional[str] = None):
        self.reference = reference
        self.referenced_by = referenced_by
        where = f' in {referenced_by}' if referenced_by else ''
        super().__init__(f'Unresolved reference "{reference}"{where}')


class CycleError(ParseError):
    """Raised when the dependency graph contains a cycle.

    Attributes:
        cycle: Node names along the cycle, first node repeated at the end
    """

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(f'Circular dependency detected: {" -> ".join(self.cycle)}')


class RunNotFoundError(EltflowError):
    """Raised when a run id is not known to the scheduler or the state store."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f'Run "{run_id}" not found')


class WarehouseError(EltflowError):
    """Raised by warehouse connections when a statement fails."""

    pass


class MaterializationError(EltflowError):
    """Raised when a model could not be created in the warehouse."""

    def __init__(self, model_name: str, message: str):
        self.model_name = model_name
        super().__init__(f'Failed to materialize {model_name}: {message}')


class TestFailure(EltflowError):
    """Raised when one or more error-severity data tests fail for a node."""

    __test__ = False  # not a pytest test class

    def __init__(self, node_name: str, failed_tests: list):
        self.node_name = node_name
        self.failed_tests = failed_tests
        names = ', '.join(t.name for t in failed_tests)
        super().__init__(f'{len(failed_tests)} test(s) failed on {node_name}: {names}')
