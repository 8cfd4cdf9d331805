from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Protocol, runtime_checkable

from ..models.operation import EffectClass

if TYPE_CHECKING:
    from .executor import OperationContext


class OperationRegistryError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class OperationAnalysis:
    """What an operation would do, shown to the user before approval."""

    analysis: str
    doable: bool = True


@runtime_checkable
class OperationDefinition(Protocol):
    """
    One operation kind the agent may propose.

    `analyze` and `execute` may be plain or `async def` functions; plain ones
    are run off the event loop.
    """

    name: str
    description: str

    def effect_for(self, args: dict[str, Any]) -> EffectClass: ...

    def analyze(self, *, args: dict[str, Any], context: "OperationContext") -> OperationAnalysis: ...

    def execute(self, *, args: dict[str, Any], context: "OperationContext") -> Any: ...


@dataclass(frozen=True, slots=True)
class FunctionOperation:
    """Adapter turning plain callables into an `OperationDefinition`."""

    name: str
    effect: EffectClass | Callable[[dict[str, Any]], EffectClass]
    run: Callable[..., Any]
    describe: Callable[[dict[str, Any]], str] | None = None
    description: str = ""
    check: Callable[[dict[str, Any]], str | None] | None = None

    def effect_for(self, args: dict[str, Any]) -> EffectClass:
        if callable(self.effect):
            return EffectClass(self.effect(args))
        return EffectClass(self.effect)

    def analyze(self, *, args: dict[str, Any], context: "OperationContext") -> OperationAnalysis:
        del context
        text = self.describe(args) if self.describe is not None else f"Will run {self.name}."
        problem = self.check(args) if self.check is not None else None
        if problem:
            return OperationAnalysis(analysis=problem, doable=False)
        return OperationAnalysis(analysis=text, doable=True)

    def execute(self, *, args: dict[str, Any], context: "OperationContext") -> Any:
        return self.run(args, context)


@dataclass(slots=True)
class OperationRegistry:
    _definitions: dict[str, OperationDefinition] = field(default_factory=dict)

    def register(self, definition: OperationDefinition) -> None:
        name = getattr(definition, "name", None)
        if not isinstance(name, str) or not name.strip():
            raise OperationRegistryError("Operation definition is missing a name.")
        if name in self._definitions:
            raise OperationRegistryError(f"Operation already registered: {name}")
        self._definitions[name] = definition

    def register_all(self, definitions: list[OperationDefinition]) -> None:
        for definition in definitions:
            self.register(definition)

    def get(self, name: str) -> OperationDefinition | None:
        return self._definitions.get(name)

    def names(self) -> list[str]:
        return sorted(self._definitions)

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)
