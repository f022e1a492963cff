"""Typed views of the custom resources managed by the controller."""

import enum
from dataclasses import dataclass, field, fields
from typing import Any, ClassVar, Dict, List, Optional, Type

from .config import (
    POKEMON_FINALIZER,
    POKEMON_GROUP,
    POKEMON_KIND,
    POKEMON_PLURAL,
    POKEMON_VERSION,
    VM_FINALIZER,
    VM_GROUP,
    VM_KIND,
    VM_PLURAL,
    VM_VERSION,
)
from .errors import InvalidStatusField


class DesiredState(str, enum.Enum):
    """Lifecycle phase requested by the VirtualMachine owner."""
    STOPPED = "STOPPED"
    STARTED = "STARTED"
    HIBERNATED = "HIBERNATED"


class CurrentState(str, enum.Enum):
    """Lifecycle phase last observed and written by the controller."""
    STOPPED = "STOPPED"
    STOPPING = "STOPPING"
    STARTED = "STARTED"
    STARTING = "STARTING"
    HIBERNATING = "HIBERNATING"
    HIBERNATED = "HIBERNATED"


@dataclass
class ObjectMeta:
    """The subset of object metadata the controller relies on."""
    name: str
    namespace: str
    uid: str = ""
    resource_version: str = ""
    generation: int = 0
    labels: Dict[str, str] = field(default_factory=dict)
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[str] = None
    owner_references: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, metadata: Dict[str, Any]) -> "ObjectMeta":
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", "default"),
            uid=metadata.get("uid", ""),
            resource_version=metadata.get("resourceVersion", ""),
            generation=metadata.get("generation", 0),
            labels=dict(metadata.get("labels") or {}),
            finalizers=list(metadata.get("finalizers") or []),
            deletion_timestamp=metadata.get("deletionTimestamp"),
            owner_references=list(metadata.get("ownerReferences") or []),
        )


@dataclass
class PokemonSpec:
    name: str = ""
    health: int = 0


@dataclass
class PokemonStatus:
    alive: bool = False


@dataclass
class VirtualMachineSpec:
    image: str = ""
    state: DesiredState = DesiredState.STOPPED


@dataclass
class VirtualMachineStatus:
    state: CurrentState = CurrentState.STOPPED


@dataclass
class ManagedResource:
    """
    A namespaced custom resource: spec is the owner's intent, status is the
    controller's last observation.
    """
    GROUP: ClassVar[str] = ""
    VERSION: ClassVar[str] = ""
    PLURAL: ClassVar[str] = ""
    KIND: ClassVar[str] = ""
    FINALIZER: ClassVar[str] = ""
    SPEC_CLASS: ClassVar[Type] = object
    STATUS_CLASS: ClassVar[Type] = object

    metadata: ObjectMeta
    spec: Any
    status: Optional[Any] = None

    @classmethod
    def from_crd(cls, crd_object: Dict[str, Any]) -> "ManagedResource":
        """Create a resource from the dict returned by the custom objects API."""
        metadata = ObjectMeta.from_dict(crd_object.get("metadata", {}))
        spec = cls.parse_spec(crd_object.get("spec") or {})
        raw_status = crd_object.get("status")
        status = cls.parse_status(raw_status) if raw_status else None
        return cls(metadata=metadata, spec=spec, status=status)

    @classmethod
    def parse_spec(cls, spec: Dict[str, Any]) -> Any:
        raise NotImplementedError

    @classmethod
    def parse_status(cls, status: Dict[str, Any]) -> Any:
        raise NotImplementedError

    @classmethod
    def api_version(cls) -> str:
        return f"{cls.GROUP}/{cls.VERSION}"

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> str:
        return make_key(self.metadata.namespace, self.metadata.name)

    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def has_finalizer(self, finalizer: Optional[str] = None) -> bool:
        return (finalizer or self.FINALIZER) in self.metadata.finalizers


@dataclass
class Pokemon(ManagedResource):
    GROUP: ClassVar[str] = POKEMON_GROUP
    VERSION: ClassVar[str] = POKEMON_VERSION
    PLURAL: ClassVar[str] = POKEMON_PLURAL
    KIND: ClassVar[str] = POKEMON_KIND
    FINALIZER: ClassVar[str] = POKEMON_FINALIZER
    SPEC_CLASS: ClassVar[Type] = PokemonSpec
    STATUS_CLASS: ClassVar[Type] = PokemonStatus

    @classmethod
    def parse_spec(cls, spec: Dict[str, Any]) -> PokemonSpec:
        return PokemonSpec(name=spec.get("name", ""), health=int(spec.get("health", 0)))

    @classmethod
    def parse_status(cls, status: Dict[str, Any]) -> PokemonStatus:
        return PokemonStatus(alive=bool(status.get("alive", False)))

    def is_alive(self) -> bool:
        return self.status.alive if self.status else False


@dataclass
class VirtualMachine(ManagedResource):
    GROUP: ClassVar[str] = VM_GROUP
    VERSION: ClassVar[str] = VM_VERSION
    PLURAL: ClassVar[str] = VM_PLURAL
    KIND: ClassVar[str] = VM_KIND
    FINALIZER: ClassVar[str] = VM_FINALIZER
    SPEC_CLASS: ClassVar[Type] = VirtualMachineSpec
    STATUS_CLASS: ClassVar[Type] = VirtualMachineStatus

    @classmethod
    def parse_spec(cls, spec: Dict[str, Any]) -> VirtualMachineSpec:
        return VirtualMachineSpec(
            image=spec.get("image", ""),
            state=DesiredState(spec.get("state", DesiredState.STOPPED.value)),
        )

    @classmethod
    def parse_status(cls, status: Dict[str, Any]) -> VirtualMachineStatus:
        return VirtualMachineStatus(
            state=CurrentState(status.get("state", CurrentState.STOPPED.value))
        )


def make_key(namespace: str, name: str) -> str:
    """Create a queue/cache key from namespace and name."""
    return f"{namespace}/{name}"


def build_status_patch(kind: Type[ManagedResource], **values: Any) -> Dict[str, Any]:
    """
    Build a merge patch for the status subresource of kind.

    Every field name is checked against the kind's status dataclass so a
    misspelled field raises instead of silently never merging.

    Raises:
        InvalidStatusField: if a field is not declared on the status schema
    """
    declared = {f.name for f in fields(kind.STATUS_CLASS)}
    unknown = sorted(set(values) - declared)
    if unknown:
        raise InvalidStatusField(
            f"{kind.KIND} status has no field(s) {', '.join(unknown)}"
        )

    status = {}
    for name, value in values.items():
        if isinstance(value, enum.Enum):
            value = value.value
        status[name] = value
    return {"status": status}
