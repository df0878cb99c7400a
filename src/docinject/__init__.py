"""Documentation-driven dependency injection.

This package injects values into the properties and one-argument setters of
an instance, driven by ``@Inject`` annotations written in the documentation of
those members, with values provided by a registry of mappings.

Exports:
- `Injector`: Owns the mappings (values, classes, singletons, singleton closures)
  and performs the injections.
- `AnnotationReader`: Parses injection directives out of a class's member
  documentation.
- `InjectionTarget`: Marker base class; resolved values carrying it get their
  own members injected before being handed out.
- `InjectionError`: Raised when a mandatory injection has no mapping.
- `InvalidCallableError`: Raised when a callable reference cannot be inspected.
"""

from ._injector import InjectionError, InjectionTarget, Injector, registry_key, registry_keys
from ._reader import AnnotationReader, InjectionDirective, InvalidCallableError, normalize_type, type_keys


__all__ = [
    "AnnotationReader",
    "InjectionDirective",
    "InjectionError",
    "InjectionTarget",
    "Injector",
    "InvalidCallableError",
    "normalize_type",
    "registry_key",
    "registry_keys",
    "type_keys",
]
