from __future__ import annotations

import ast
import builtins
import importlib
import inspect
import logging
import re
import sys
import textwrap
import types
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Union, get_args, get_origin, get_type_hints


logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    Token = type | str


# Prefix of a fully-qualified type name, like protobuf's ".package.Message".
ROOT_MARKER = "."

_ANNOTATION_LINE = re.compile(r"^\s*(?:\*+|#:?)?\s*@(?=[a-z])", re.IGNORECASE)
_INJECT_TAG = re.compile(r"""^Inject(Mandatory)?(?:\((["'])([a-z0-9_]+)\2\))?\s*$""", re.IGNORECASE)
_VAR_TAG = re.compile(r"^var\s+(\S+)", re.IGNORECASE)
_PARAM_TAG = re.compile(r"^param\s+(\S+)", re.IGNORECASE)
_TYPE_NAME = re.compile(r"^[.a-z0-9_]+$", re.IGNORECASE)

_MISSING = object()


@dataclass(frozen=True)
class InjectionDirective:
    """One injectable member found on a class."""

    target_name: str
    injection_type: str
    injection_name: str | None = None
    mandatory: bool = False
    aliases: tuple[str, ...] = ()  # fallback type names, tried in order after injection_type


class InvalidCallableError(ValueError):
    pass


def normalize_type(token: Token) -> str:
    """Return the canonical name used for a type in registry keys.

    Classes are named after their module and qualified name. Names that do
    not start with `ROOT_MARKER` get it prepended, so ``"app.db.Database"``,
    ``".app.db.Database"`` and the ``Database`` class itself all agree.
    """
    if inspect.isclass(token):
        name = f"{token.__module__}.{token.__qualname__}"
    elif isinstance(token, str) and token:
        name = token
    else:
        msg = f"Expected a class or a non-empty type name, got {token!r}"
        raise TypeError(msg)

    if not name.startswith(ROOT_MARKER):
        name = ROOT_MARKER + name
    return name


def type_keys(token: Token) -> tuple[str, ...]:
    """Return every name a type is known by, canonical name first.

    A class is also known by its qualified name without module (and without
    any enclosing function scope), which is how documentation refers to
    classes it cannot import: ``@var Database`` matches ``map_value("Database", v)``
    as well as a class that is local or only imported for type checking.
    """
    canonical = normalize_type(token)
    if not inspect.isclass(token):
        return (canonical,)

    short = normalize_type(token.__qualname__.rpartition("<locals>.")[2])
    return (canonical,) if short == canonical else (canonical, short)


def import_object(ref: str) -> Any:
    """Import ``"package.module:qualified.name"`` or ``"package.module.name"``."""
    module_name, sep, qualname = ref.partition(":")
    if not sep:
        module_name, _, qualname = ref.rpartition(".")
    if not module_name or not qualname:
        msg = f"Cannot split {ref!r} into module and attribute parts"
        raise ImportError(msg)

    obj = importlib.import_module(module_name)
    for part in qualname.split("."):
        obj = getattr(obj, part)
    return obj


class AnnotationReader:
    """Reads injection directives from the documentation of a class's members.

    Recognized tags, one per documentation line::

        @Inject                  optional injection
        @InjectMandatory("db")   mandatory, named injection
        @var app.db.Database     type of an attribute or property
        @param Database          type of a setter's single argument

    Attributes are documented with a string literal right after their
    assignment, or with a ``#:`` comment block right above it.
    """

    def __init__(self, target: type | object | str | None = None) -> None:
        self._target = target
        self._cls: type | None = None

    @property
    def target_class(self) -> type:
        if self._cls is None:
            if self._target is None:
                msg = "No class given to read annotations from"
                raise ValueError(msg)
            self._cls = _resolve_class(self._target)
        return self._cls

    def get_injected_properties(self) -> list[InjectionDirective]:
        directives: list[InjectionDirective] = []

        for name, owner, member, attribute_doc in _iter_members(self.target_class):
            if isinstance(member, property):
                doc = member.__doc__ or attribute_doc
            elif attribute_doc is not None or _is_plain_attribute(member):
                # an assignment in the class body is an attribute, whatever its default
                doc = attribute_doc
            else:
                continue

            lines = _annotation_lines(doc)
            injection = _parse_inject_tag(lines)
            if injection is None:
                continue

            var_type = _parse_type_tag(lines, _VAR_TAG)
            if var_type is None:
                logger.debug("Skipping %s.%s: @Inject without a usable @var type", owner.__qualname__, name)
                continue

            mandatory, injection_name = injection
            keys = _documented_type_keys(var_type, owner)
            directives.append(
                InjectionDirective(
                    target_name=name,
                    injection_type=keys[0],
                    injection_name=injection_name,
                    mandatory=mandatory,
                    aliases=keys[1:],
                )
            )

        return directives

    def get_injected_setters(self) -> list[InjectionDirective]:
        directives: list[InjectionDirective] = []

        for name, owner, member, _ in _iter_members(self.target_class):
            if not inspect.isfunction(member):
                continue

            parameter = _setter_parameter(member)
            if parameter is None:
                continue  # only one-argument setters

            lines = _annotation_lines(member.__doc__)
            injection = _parse_inject_tag(lines)
            if injection is None:
                continue

            type_name = _parse_type_tag(lines, _PARAM_TAG)
            if type_name is not None:
                keys = _documented_type_keys(type_name, owner)
            else:
                hint = _class_hint(_get_type_hints(member).get(parameter.name))
                if hint is None:
                    logger.debug("Skipping %s.%s(): @Inject without a usable parameter type", owner.__qualname__, name)
                    continue
                keys = type_keys(hint)

            mandatory, injection_name = injection
            directives.append(
                InjectionDirective(
                    target_name=name,
                    injection_type=keys[0],
                    injection_name=injection_name,
                    mandatory=mandatory,
                    aliases=keys[1:],
                )
            )

        return directives

    def get_params_types(self, func: Any) -> list[str]:
        """Return the normalized class type of every class-typed parameter of `func`.

        `func` may be any callable, a ``(class_or_instance, "method")`` pair, or an
        import path such as ``"package.module:Class.method"``. Parameters without
        a class type hint are skipped.
        """
        target = _resolve_callable(func)

        try:
            signature = inspect.signature(target)
        except (TypeError, ValueError) as e:
            msg = f"Unable to inspect the parameters of callable {func!r}"
            raise InvalidCallableError(msg) from e

        hints = _get_type_hints(_hints_owner(target))
        classes = (_class_hint(hints.get(name)) for name in signature.parameters)
        return [normalize_type(cls) for cls in classes if cls is not None]


def _resolve_class(target: type | object | str) -> type:
    if inspect.isclass(target):
        return target

    if isinstance(target, str):
        try:
            cls = import_object(target)
        except (ImportError, AttributeError, ValueError) as e:
            msg = f"Unable to import class {target!r}"
            raise TypeError(msg) from e
        if not inspect.isclass(cls):
            msg = f"{target!r} does not name a class"
            raise TypeError(msg)
        return cls

    return type(target)


def _resolve_callable(func: Any) -> Callable[..., Any]:
    if isinstance(func, (tuple, list)):
        if len(func) != 2 or not isinstance(func[1], str):  # noqa: PLR2004
            msg = f"Expected a (class, method name) pair, got {func!r}"
            raise InvalidCallableError(msg)
        owner, method_name = func
        if isinstance(owner, str):
            owner = _import_callable_part(owner)
        target = getattr(owner, method_name, _MISSING)
        if target is _MISSING:
            msg = f"{owner!r} has no method {method_name!r}"
            raise InvalidCallableError(msg)

    elif isinstance(func, str):
        module_name, sep, qualname = func.partition(":")
        if sep and (not module_name or not qualname):
            msg = f"Cannot split {func!r} into module and callable parts"
            raise InvalidCallableError(msg)
        target = _import_callable_part(func)

    else:
        target = func

    if not callable(target):
        msg = f"Expected a callable (function, method, class or callable object) but got {func!r}"
        raise InvalidCallableError(msg)
    return target


def _import_callable_part(ref: str) -> Any:
    try:
        return import_object(ref)
    except (ImportError, AttributeError, ValueError) as e:
        msg = f"Unable to resolve callable reference {ref!r}"
        raise InvalidCallableError(msg) from e


def _hints_owner(target: Callable[..., Any]) -> Any:
    """Return the object whose annotations describe the parameters of `target`."""
    if inspect.isclass(target):
        return inspect.getattr_static(target, "__init__")
    if inspect.ismethod(target):
        return target.__func__
    if inspect.isfunction(target) or inspect.isbuiltin(target):
        return target
    # callable instance
    return getattr(type(target), "__call__", target)


def _get_type_hints(obj: Any) -> dict[str, Any]:
    try:
        hints = get_type_hints(obj)
    except TypeError:
        hints = {}
    except NameError as exc:
        logger.warning(
            "'%s' name error retrieving %s type hints",
            exc.name,
            getattr(obj, "__qualname__", repr(obj)),
        )
        hints = {}

    return hints


def _resolve_type_name(type_name: str, owner: type) -> Token:
    """Turn a documented type name into a class when it names one.

    Lookup order: the module declaring `owner`, builtins, then an import of
    the dotted path. Absolute names (leading `ROOT_MARKER`) are kept verbatim.
    """
    if type_name.startswith(ROOT_MARKER):
        return type_name

    head, *rest = type_name.split(".")
    module = sys.modules.get(owner.__module__)
    obj = getattr(module, head, _MISSING) if module is not None else _MISSING
    if obj is _MISSING:
        obj = getattr(builtins, head, _MISSING)

    for part in rest:
        if obj is _MISSING:
            break
        obj = getattr(obj, part, _MISSING)

    if obj is _MISSING and rest:
        try:
            obj = import_object(type_name)
        except (ImportError, AttributeError, ValueError):
            obj = _MISSING

    return obj if inspect.isclass(obj) else type_name


def _documented_type_keys(type_name: str, owner: type) -> tuple[str, ...]:
    """Type names for a documented type, the resolved class first, then the text as written."""
    resolved = _resolve_type_name(type_name, owner)
    if not inspect.isclass(resolved):
        logger.debug(
            "%s: type %r does not name an importable class, using it as written", owner.__qualname__, type_name
        )

    keys = type_keys(resolved)
    written = normalize_type(type_name)
    return keys if written in keys else (*keys, written)


def _class_hint(hint: object) -> type | None:
    """Return the class of a class hint, including ``X | None`` and ``Optional[X]``."""
    if inspect.isclass(hint):
        return hint

    if get_origin(hint) in (Union, types.UnionType):
        args = [arg for arg in get_args(hint) if arg is not type(None)]
        if len(args) == 1 and inspect.isclass(args[0]):
            return args[0]
    return None


def _annotation_lines(doc: str | None) -> list[str]:
    lines = []
    for line in (doc or "").splitlines():
        stripped, count = _ANNOTATION_LINE.subn("", line, count=1)
        if count:
            lines.append(stripped)
    return lines


def _parse_inject_tag(lines: list[str]) -> tuple[bool, str | None] | None:
    for line in lines:
        match = _INJECT_TAG.match(line)
        if match:
            return match.group(1) is not None, match.group(3)
    return None


def _parse_type_tag(lines: list[str], pattern: re.Pattern[str]) -> str | None:
    for line in lines:
        match = pattern.match(line)
        if match and _TYPE_NAME.match(match.group(1)):
            return match.group(1)
    return None


def _is_plain_attribute(member: object) -> bool:
    if isinstance(member, (staticmethod, classmethod)) or inspect.isclass(member):
        return False
    return not callable(member)


def _setter_parameter(func: Callable[..., Any]) -> inspect.Parameter | None:
    try:
        params = list(inspect.signature(func).parameters.values())[1:]  # drop 'self'
    except (TypeError, ValueError):
        return None

    if len(params) != 1:
        return None
    if params[0].kind in (inspect.Parameter.KEYWORD_ONLY, inspect.Parameter.VAR_KEYWORD):
        return None
    return params[0]


def _iter_members(cls: type) -> Iterator[tuple[str, type, object, str | None]]:
    """Yield ``(name, owner, member, attribute_doc)`` for public members, bases first."""
    members: dict[str, tuple[type, object, str | None]] = {}

    for klass in reversed(cls.__mro__):
        if klass is object:
            continue

        attribute_docs = _attribute_docs(klass)
        namespace = vars(klass)
        for name, member in namespace.items():
            if not name.startswith("_"):
                members[name] = (klass, member, attribute_docs.get(name))

        # annotation-only attributes never reach the class namespace
        for name, doc in attribute_docs.items():
            if not name.startswith("_") and name not in namespace:
                members[name] = (klass, None, doc)

    for name, (owner, member, doc) in members.items():
        yield name, owner, member, doc


def _attribute_docs(cls: type) -> dict[str, str]:
    """Collect documentation attached to attributes in the class body.

    Both the ``#:`` comment block right above an assignment and the string
    literal right below it count, the way Sphinx autodoc reads them.
    """
    try:
        source_lines, _ = inspect.getsourcelines(cls)
    except (OSError, TypeError):
        logger.debug("No source available for %s, its attributes have no documentation", cls.__qualname__)
        return {}

    source = textwrap.dedent("".join(source_lines))
    try:
        tree = ast.parse(source)
    except SyntaxError:
        logger.debug("Could not parse the source of %s", cls.__qualname__)
        return {}

    classdef = next((node for node in tree.body if isinstance(node, ast.ClassDef)), None)
    if classdef is None:
        return {}

    lines = source.splitlines()
    docs: dict[str, str] = {}
    body = classdef.body
    for index, node in enumerate(body):
        name = _assigned_name(node)
        if name is None:
            continue

        parts = []
        row = node.lineno - 2
        while row >= 0 and lines[row].lstrip().startswith("#:"):
            parts.insert(0, lines[row])
            row -= 1

        following = body[index + 1] if index + 1 < len(body) else None
        if (
            isinstance(following, ast.Expr)
            and isinstance(following.value, ast.Constant)
            and isinstance(following.value.value, str)
        ):
            parts.append(following.value.value)

        docs[name] = "\n".join(parts)

    return docs


def _assigned_name(node: ast.stmt) -> str | None:
    if isinstance(node, ast.Assign) and len(node.targets) == 1:
        target = node.targets[0]
    elif isinstance(node, ast.AnnAssign):
        target = node.target
    else:
        return None
    return target.id if isinstance(target, ast.Name) else None
