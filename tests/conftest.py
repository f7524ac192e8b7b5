"""Pytest configuration and fixtures."""

import sys
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from stackctl.capabilities import CapabilityTable  # noqa: E402
from stackctl.config import Config  # noqa: E402
from stackctl.graph import ResourceGraph  # noqa: E402
from stackctl.outputs import get_export_registry  # noqa: E402
from stackctl.planner import DependencyPlanner  # noqa: E402
from stackctl.providers.local import InMemoryProvider  # noqa: E402
from stackctl.references import ReferenceResolver  # noqa: E402
from stackctl.template_loader import bind_parameters, parse_template  # noqa: E402

FIXTURES_DIR = Path(__file__).parent / "fixtures"

PSEUDO_PARAMETERS = {
    "AWS::Region": "local",
    "AWS::AccountId": "000000000000",
    "AWS::StackName": "audit",
    "AWS::Partition": "aws",
}


@dataclass
class Compiled:
    graph: ResourceGraph
    resolver: ReferenceResolver
    order: list[str]


@pytest.fixture(autouse=True)
def reset_export_registry() -> Iterator[None]:
    """Each test starts with an empty process-wide export registry."""
    get_export_registry().clear()
    yield
    get_export_registry().clear()


@pytest.fixture
def capabilities() -> CapabilityTable:
    return CapabilityTable.builtin()


@pytest.fixture
def provider(capabilities: CapabilityTable) -> InMemoryProvider:
    return InMemoryProvider(capabilities)


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(
        stack_name="audit",
        state_dir=tmp_path / "state",
        operation_timeout_seconds=5,
        retry_backoff_base_seconds=0,
    )


@pytest.fixture
def audit_template() -> Path:
    return FIXTURES_DIR / "audit_trail.yaml"


@pytest.fixture
def write_template(tmp_path: Path) -> Callable[[str, str], Path]:
    """Write template text to a file under tmp_path."""

    def write(content: str, name: str = "template.yaml") -> Path:
        path = tmp_path / name
        path.write_text(content, encoding="utf-8")
        return path

    return write


@pytest.fixture
def compile_template(capabilities: CapabilityTable) -> Callable[..., Compiled]:
    """Parse, bind, annotate and order template text."""

    def compile_text(
        content: str,
        overrides: dict[str, Any] | None = None,
        exports: dict[str, Any] | None = None,
    ) -> Compiled:
        document = parse_template(content)
        graph = ResourceGraph.from_document(document, bind_parameters(document, overrides))
        resolver = ReferenceResolver(
            graph,
            pseudo_parameters=PSEUDO_PARAMETERS,
            exports=exports or {},
            capabilities=capabilities,
        )
        resolver.annotate()
        return Compiled(graph, resolver, DependencyPlanner(graph).plan())

    return compile_text
