"""Step registry: names, argument contracts and operations for pipeline steps."""

from __future__ import annotations

import json
import logging
from importlib import import_module
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Type,
)

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .contracts import AuthContext, SegmentTask
from .errors import (
    MissingOutputFieldError,
    StepArgumentsError,
    UnknownStepError,
    WorkflowValidationError,
)

if TYPE_CHECKING:
    from .streaming import EventSink

logger = logging.getLogger(__name__)

Operation = Callable[[str, Any, "StepContext"], Awaitable[Any]]


class StepContext(BaseModel):
    """Runtime context handed to every operation call."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    run_id: str
    step_name: str
    auth: AuthContext = Field(default_factory=AuthContext)
    item_id: Optional[str] = None
    sink: Optional[Any] = Field(default=None, exclude=True)

    def log(self, message: str, **extra: Any) -> None:
        """Publish a ``log`` event if the run's stream is still open."""
        sink: Optional[EventSink] = self.sink
        if sink is None or sink.terminated:
            return
        if self.item_id is not None:
            extra.setdefault("item_id", self.item_id)
        sink.log(message, step=self.step_name, **extra)

    def for_item(self, item_id: str) -> "StepContext":
        return self.model_copy(update={"item_id": item_id})


class BatchItem(BaseModel):
    """Input for one item operation of a batch step."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    item: Any
    arguments: Any


class BatchSpec(BaseModel):
    """Describes how a step fans out over a list field of its arguments."""

    items_field: str
    item_id_field: str = "id"
    retry_ids_field: Optional[str] = None


def resolve_operation(reference: str) -> Operation:
    """Import an operation from a ``module:attribute`` reference."""
    module_name, sep, attr = reference.partition(":")
    if not sep or not module_name or not attr:
        raise WorkflowValidationError(
            f"Operation reference must look like 'module:attribute', got {reference!r}"
        )
    try:
        module = import_module(module_name)
    except ImportError as exc:
        raise WorkflowValidationError(
            f"Cannot import operation module {module_name}: {exc}"
        ) from exc

    target: Any = module
    for part in attr.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as exc:
            raise WorkflowValidationError(
                f"Module {module_name} has no attribute {attr}"
            ) from exc
    if not callable(target):
        raise WorkflowValidationError(f"Operation {reference} is not callable")
    return target


class StepDefinition(BaseModel):
    """Contract for one pipeline step."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    arguments_model: Type[BaseModel]
    operation: Any
    needs_approval: bool = False
    batch: Optional[BatchSpec] = None
    all_or_nothing: bool = False
    concurrency_limit: Optional[int] = None
    item_timeout: Optional[float] = None
    description: Optional[str] = None

    @field_validator("operation")
    @classmethod
    def _resolve_operation(cls, v: Any) -> Operation:
        if isinstance(v, str):
            return resolve_operation(v)
        if not callable(v):
            raise ValueError("operation must be callable or a 'module:attr' string")
        return v

    @field_validator("concurrency_limit")
    @classmethod
    def _positive_limit(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("concurrency_limit must be at least 1")
        return v

    @property
    def is_batch(self) -> bool:
        return self.batch is not None

    def decode_arguments(self, raw: Any) -> BaseModel:
        """Validate ``raw`` (mapping or JSON string) into the step's model."""
        return decode_arguments(self, raw)

    def build_tasks(
        self, arguments: BaseModel, retry_item_ids: Optional[Iterable[str]] = None
    ) -> List[SegmentTask]:
        """Split validated arguments into fan-out tasks.

        When ``retry_item_ids`` is given (directly or through the batch's
        ``retry_ids_field``), only those items are scheduled.
        """
        if self.batch is None:
            raise WorkflowValidationError(f"Step {self.name} is not a batch step")

        items = getattr(arguments, self.batch.items_field, None)
        if items is None:
            raise StepArgumentsError(
                f"Step {self.name} arguments have no field {self.batch.items_field!r}"
            )

        if retry_item_ids is None and self.batch.retry_ids_field:
            retry_item_ids = getattr(arguments, self.batch.retry_ids_field, None)
        wanted = set(retry_item_ids) if retry_item_ids else None

        tasks: List[SegmentTask] = []
        for index, item in enumerate(items):
            item_id = _read_field(item, self.batch.item_id_field)
            if item_id is None:
                raise StepArgumentsError(
                    f"Item {index} of step {self.name} has no "
                    f"{self.batch.item_id_field!r} field"
                )
            item_id = str(item_id)
            if wanted is not None and item_id not in wanted:
                continue
            tasks.append(
                SegmentTask(
                    item_id=item_id, input=BatchItem(item=item, arguments=arguments)
                )
            )
        return tasks


def _read_field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def decode_arguments(definition: StepDefinition, raw: Any) -> BaseModel:
    """Decode step arguments once at the boundary.

    Arguments may arrive as a mapping, a JSON string or an already-validated
    model instance.

    Raises:
        StepArgumentsError: If the payload does not match the step contract.
    """
    model = definition.arguments_model
    if isinstance(raw, model):
        return raw
    if isinstance(raw, BaseModel):
        raw = raw.model_dump()
    try:
        if isinstance(raw, (str, bytes)):
            return model.model_validate_json(raw)
        return model.model_validate(raw or {})
    except ValidationError as exc:
        raise StepArgumentsError(
            f"Invalid arguments for step {definition.name}: {exc}"
        ) from exc
    except json.JSONDecodeError as exc:  # pragma: no cover - pydantic wraps this
        raise StepArgumentsError(
            f"Arguments for step {definition.name} are not valid JSON"
        ) from exc


class StepRegistry:
    """Holds the step definitions a workflow can reference by name."""

    def __init__(self, definitions: Iterable[StepDefinition] = ()) -> None:
        self._steps: Dict[str, StepDefinition] = {}
        for definition in definitions:
            self.register(definition)

    def register(self, definition: StepDefinition) -> StepDefinition:
        if definition.name in self._steps:
            raise WorkflowValidationError(
                f"Step {definition.name} is already registered"
            )
        self._steps[definition.name] = definition
        logger.debug(f"Registered step {definition.name}")
        return definition

    def step(
        self,
        name: str,
        arguments: Type[BaseModel],
        **options: Any,
    ) -> Callable[[Operation], Operation]:
        """Decorator registering an async operation as a step."""

        def decorator(func: Operation) -> Operation:
            self.register(
                StepDefinition(
                    name=name,
                    arguments_model=arguments,
                    operation=func,
                    description=options.pop("description", None) or func.__doc__,
                    **options,
                )
            )
            return func

        return decorator

    def get(self, name: str) -> StepDefinition:
        try:
            return self._steps[name]
        except KeyError:
            raise UnknownStepError(f"Step {name} is not registered") from None

    def names(self) -> List[str]:
        return list(self._steps)

    def __contains__(self, name: object) -> bool:
        return name in self._steps

    def __iter__(self):
        return iter(self._steps.values())

    def __len__(self) -> int:
        return len(self._steps)


def load_registry(reference: str) -> StepRegistry:
    """Import a :class:`StepRegistry` from a ``module:attribute`` reference."""
    target = resolve_operation(reference)
    if not isinstance(target, StepRegistry):
        raise WorkflowValidationError(f"{reference} is not a StepRegistry")
    return target


# ----------------------------------------------------------------------
# Input bindings

INPUT_PREFIX = "$input"
STEPS_PREFIX = "$steps"


def _walk(value: Any, path: List[str], reference: str) -> Any:
    current = value
    for part in path:
        if isinstance(current, dict):
            if part not in current:
                raise MissingOutputFieldError(
                    f"Binding {reference!r}: field {part!r} not found"
                )
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(current):
                raise MissingOutputFieldError(
                    f"Binding {reference!r}: index {index} out of range"
                )
            current = current[index]
        elif isinstance(current, BaseModel) and part in type(current).model_fields:
            current = getattr(current, part)
        elif hasattr(current, part) and not isinstance(current, (str, bytes)):
            current = getattr(current, part)
        else:
            raise MissingOutputFieldError(
                f"Binding {reference!r}: field {part!r} not found"
            )
    return current


def referenced_steps(bindings: Dict[str, Any]) -> List[str]:
    """Return step names referenced by ``$steps.<name>`` bindings."""
    names = []
    for value in bindings.values():
        if isinstance(value, str) and value.startswith(STEPS_PREFIX + "."):
            names.append(value.split(".")[1])
    return names


def resolve_binding(
    value: Any, run_input: Any, step_outputs: Dict[str, Any]
) -> Any:
    """Resolve one binding value; non-reference values are literals."""
    if not isinstance(value, str) or not value.startswith("$"):
        return value

    parts = value.split(".")
    head = parts[0]
    if head == INPUT_PREFIX:
        return _walk(run_input, parts[1:], value)
    if head == STEPS_PREFIX:
        if len(parts) < 2:
            raise WorkflowValidationError(f"Binding {value!r} names no step")
        step_name = parts[1]
        if step_name not in step_outputs:
            raise MissingOutputFieldError(
                f"Binding {value!r}: step {step_name} has no recorded output"
            )
        return _walk(step_outputs[step_name], parts[2:], value)
    raise WorkflowValidationError(f"Unknown binding reference {value!r}")


def resolve_bindings(
    bindings: Dict[str, Any], run_input: Any, step_outputs: Dict[str, Any]
) -> Dict[str, Any]:
    """Build a step's raw arguments from its bindings.

    With no bindings the run input itself is used when it is a mapping.
    """
    if not bindings:
        return dict(run_input) if isinstance(run_input, dict) else {}
    return {
        name: resolve_binding(value, run_input, step_outputs)
        for name, value in bindings.items()
    }
