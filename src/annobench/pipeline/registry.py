"""Registry of annotation tools the benchmark can run.

Keys are tool names ("cellassign", "singler", "scanvi"), not benchmark
method names: BenchmarkRunner.build_annotators() creates one instance per
method, so "cellassign_basic" and "cellassign_refined" are two
CellAssignAnnotator instances with different marker matrices.
`annobench list-annotators` prints the registered tools with the first
line of each class docstring.

Tool modules register themselves on import, which
annobench.pipeline.components.annotators triggers:

    @register_annotator
    class SingleRAnnotator:
        name = "singler"
        ...

    annotator = get_annotator("singler", config, reference="hpca")
"""

from typing import Any, TypeVar

from annobench.pipeline.base import AnnotationConfig, AnnotatorProtocol

A = TypeVar("A", bound=AnnotatorProtocol)

_ANNOTATOR_REGISTRY: dict[str, type[AnnotatorProtocol]] = {}


def register_annotator(cls: type[A]) -> type[A]:
    """Register an annotator class under its `name` attribute.

    Raises:
        ValueError: If the class has no name or the name is taken
    """
    if not hasattr(cls, "name"):
        raise ValueError(f"Annotator class {cls.__name__} must have a 'name' attribute")

    name = cls.name
    if name in _ANNOTATOR_REGISTRY:
        raise ValueError(f"Annotator '{name}' is already registered")

    _ANNOTATOR_REGISTRY[name] = cls
    return cls


def get_annotator(
    name: str,
    config: AnnotationConfig | None = None,
    **kwargs: Any,
) -> AnnotatorProtocol:
    """Get an annotator instance by name.

    Args:
        name: Registered annotator name (e.g., "cellassign", "singler")
        config: Optional configuration to pass to constructor
        **kwargs: Additional constructor arguments

    Returns:
        Instantiated annotator

    Raises:
        ValueError: If annotator name is not registered
    """
    cls = get_annotator_class(name)
    if config is not None:
        return cls(config=config, **kwargs)
    return cls(**kwargs)


def list_annotators() -> list[str]:
    """List all registered annotator names."""
    return list(_ANNOTATOR_REGISTRY.keys())


def get_annotator_class(name: str) -> type[AnnotatorProtocol]:
    """Get an annotator class by name (without instantiation)."""
    if name not in _ANNOTATOR_REGISTRY:
        available = ", ".join(_ANNOTATOR_REGISTRY.keys())
        raise ValueError(
            f"Unknown annotator '{name}'. Available: {available}"
        )
    return _ANNOTATOR_REGISTRY[name]


def unregister_annotator(name: str) -> None:
    """Drop a registered name; unknown names are ignored."""
    _ANNOTATOR_REGISTRY.pop(name, None)
