from __future__ import annotations

import inspect
import logging
import threading
from abc import ABC
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ._reader import AnnotationReader, InjectionDirective, import_object, type_keys


logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from collections.abc import Callable

    from ._reader import Token


NAMED_SEPARATOR = "->"

_UNSET = object()


class InjectionTarget(ABC):  # noqa: B024
    """Marker for objects whose own members get injected once they are resolved.

    Subclass it, or opt a third-party class in with ``InjectionTarget.register(cls)``.
    """

    __slots__ = ()


class InjectionError(RuntimeError):
    """A mandatory injection has no matching mapping."""

    def __init__(
        self,
        injection_type: str,
        injection_name: str | None = None,
        target_class: type | None = None,
    ) -> None:
        self.injection_type = injection_type
        self.injection_name = injection_name
        self.target_class = target_class

        msg = f'Mandatory injection asked for type "{injection_type}"'
        if injection_name is not None:
            msg += f' and injection name "{injection_name}"'
        if target_class is not None:
            msg += f' in class "{target_class.__qualname__}"'
        msg += ", but there is no matching injection mapping!"
        super().__init__(msg)


@dataclass
class ValueProvider:
    value: object

    def provide(self) -> object:
        return self.value


@dataclass
class FactoryProvider:
    factory: Callable[[], object]

    def provide(self) -> object:
        return self.factory()


@dataclass
class SingletonProvider:
    factory: Callable[[], object]
    cached_instance: object = _UNSET  # first factory result, once computed
    lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False, compare=False)

    def provide(self) -> object:
        with self.lock:
            if self.cached_instance is _UNSET:
                self.cached_instance = self.factory()
            return self.cached_instance


Provider = ValueProvider | FactoryProvider | SingletonProvider


def registry_keys(token: Token, name: str | None = None) -> tuple[str, ...]:
    """Return the registry keys of `token` (and `name`), canonical key first."""
    return _with_name(type_keys(token), name)


def registry_key(token: Token, name: str | None = None) -> str:
    return registry_keys(token, name)[0]


def _with_name(type_names: tuple[str, ...], name: str | None) -> tuple[str, ...]:
    if not name:
        return type_names
    return tuple(type_name + NAMED_SEPARATOR + name for type_name in type_names)


class Injector:
    """Property and setter injection driven by documentation annotations.

    - map values, classes, singletons or singleton closures to a type (and optional name)
    - inject mapped values into the annotated members of an instance
    - recursively inject into resolved values that are `InjectionTarget` instances.
    """

    def __init__(self) -> None:
        self._registry: dict[str, Provider] = {}
        self._lock = threading.RLock()

    def map_value(self, token: Token, value: object, name: str | None = None) -> None:
        """Map a ready-made value.

        Example:
          injector.map_value(Config, Config(debug=True))
          injector.map_value("app.Settings", settings, name="prod")

        """
        self._bind(token, name, ValueProvider(value))

    def map_class(self, token: Token, concrete: type | str | None = None, name: str | None = None) -> None:
        """Map to a new `concrete` instance (default: `token` itself) on every request."""
        cls = _as_class(token if concrete is None else concrete)
        self._bind(token, name, FactoryProvider(cls))

    def map_singleton(self, token: Token, name: str | None = None) -> None:
        self.map_singleton_of(token, token, name)

    def map_singleton_of(self, token: Token, concrete: type | str, name: str | None = None) -> None:
        """Map to a single `concrete` instance, created on the first request."""
        cls = _as_class(concrete)
        self._bind(token, name, SingletonProvider(cls))

    def map_singleton_through_closure(
        self,
        token: Token,
        closure: Callable[[], object],
        name: str | None = None,
    ) -> None:
        """Map to the return value of `closure`, called once on the first request.

        Useful for lazy loading, or for a singleton that needs constructor
        arguments or some setup after instantiation.
        """
        if not callable(closure):
            msg = f"Expected a zero-argument callable, got {closure!r}"
            raise TypeError(msg)
        self._bind(token, name, SingletonProvider(closure))

    def has_mapping(self, token: Token, name: str | None = None) -> bool:
        return self._find_key(registry_keys(token, name)) is not None

    def instantiate(self, token: Token, name: str | None = None) -> Any:
        """Return the value mapped to `token` (and `name`), or None when nothing is mapped."""
        return self._provide(self._find_key(registry_keys(token, name)))

    def inject_into(self, instance: object) -> None:
        """Inject annotated properties, then annotated setters, of `instance`.

        Any injected value which is an `InjectionTarget` gets its own
        injections first.
        """
        reader = AnnotationReader(type(instance))
        properties = reader.get_injected_properties()
        setters = reader.get_injected_setters()
        logger.debug(
            "Injecting %d properties and %d setters into %s",
            len(properties),
            len(setters),
            type(instance).__qualname__,
        )

        for directive in properties:
            setattr(instance, directive.target_name, self._injection_value(directive, instance))

        for directive in setters:
            getattr(instance, directive.target_name)(self._injection_value(directive, instance))

    def get_params_types(self, func: Any) -> list[str]:
        """Return the normalized class types of the parameters of `func`."""
        return AnnotationReader().get_params_types(func)

    def _bind(self, token: Token, name: str | None, provider: Provider) -> None:
        keys = registry_keys(token, name)
        with self._lock:
            for key in keys:
                self._registry[key] = provider
        logger.debug("Mapped %s to %s", ", ".join(keys), type(provider).__name__)

    def _find_key(self, keys: tuple[str, ...]) -> str | None:
        with self._lock:
            key = next((key for key in keys if key in self._registry), None)
        if key is None:
            logger.debug("No mapping for %s", keys[0])
        return key

    def _injection_value(self, directive: InjectionDirective, instance: object) -> Any:
        type_names = (directive.injection_type, *directive.aliases)
        key = self._find_key(_with_name(type_names, directive.injection_name))
        # an explicit None mapping still satisfies a mandatory injection
        if directive.mandatory and key is None:
            raise InjectionError(directive.injection_type, directive.injection_name, type(instance))
        return self._provide(key)

    def _provide(self, key: str | None) -> Any:
        if key is None:
            return None
        with self._lock:
            provider = self._registry[key]

        value = provider.provide()
        if isinstance(value, InjectionTarget):
            self.inject_into(value)
        return value


def _as_class(ref: type | str) -> type:
    if inspect.isclass(ref):
        return ref

    if isinstance(ref, str):
        try:
            cls = import_object(ref)
        except (ImportError, AttributeError, ValueError) as e:
            msg = f"Unable to import class {ref!r}"
            raise TypeError(msg) from e
        if inspect.isclass(cls):
            return cls

    msg = f"Expected a class or a class import path, got {ref!r}"
    raise TypeError(msg)
