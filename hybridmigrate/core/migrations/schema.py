"""Schema description API for entities registered with the migrator.

Entities subclass :class:`Entity` and declare their columns as class
attributes::

    class User(Entity):
        id = Field(int, "primary_key")
        email = Field(str, "unique,not_null,max_length:255")
        nickname = Field(Optional[str])

Tags follow a comma separated ``key`` / ``key:value`` syntax; keyword options
passed to :class:`Field` override the tag string. Attributes of base classes
and :class:`Embedded` groups are flattened into the entity's column set.
"""

from typing import Any, Dict, Iterator, List, Optional, Tuple, Union, get_args, get_origin


class Field:
    """Column descriptor."""

    def __init__(self, type_: Any, tags: Optional[str] = None, **options: Any) -> None:
        self.type = type_
        self.tags = tags or ""
        self.options = options
        self.name: Optional[str] = None

    def __set_name__(self, owner: type, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return f"Field({self.name!r}, {self.type!r}, tags={self.tags!r})"

    @property
    def excluded(self) -> bool:
        return self.tags.strip() == "-" or bool(self.options.get("exclude"))

    def parsed_tags(self) -> Dict[str, Any]:
        """Tag string merged with keyword options (options win)."""
        parsed = parse_tags(self.tags)
        parsed.update(self.options)
        return parsed


class Embedded:
    """Group of fields whose columns are flattened into the owning entity."""

    def __init__(self, schema: type, prefix: str = "") -> None:
        self.schema = schema
        self.prefix = prefix
        self.name: Optional[str] = None

    def __set_name__(self, owner: type, name: str) -> None:
        self.name = name


class Entity:
    """Base class for entities; ``__tablename__`` overrides the inferred name."""

    __tablename__: Optional[str] = None

    @classmethod
    def table_name(cls) -> Optional[str]:
        return cls.__dict__.get("__tablename__") or cls.__tablename__


def parse_tags(tags: str) -> Dict[str, Any]:
    """Parse ``"primary_key,max_length:100,default:'x'"`` into a dict.

    Flags map to ``True``; ``key:value`` pairs keep the raw value string.
    Commas inside parentheses or quotes do not split tags.
    """
    parsed: Dict[str, Any] = {}
    for part in _split_tags(tags):
        part = part.strip()
        if not part:
            continue
        key, sep, value = part.partition(":")
        key = key.strip().lower()
        parsed[key] = value.strip() if sep else True
    return parsed


def _split_tags(tags: str) -> List[str]:
    parts: List[str] = []
    current: List[str] = []
    depth = 0
    quote: Optional[str] = None
    for char in tags:
        if quote:
            current.append(char)
            if char == quote:
                quote = None
            continue
        if char in ("'", '"'):
            quote = char
        elif char == "(":
            depth += 1
        elif char == ")":
            depth = max(depth - 1, 0)
        elif char == "," and depth == 0:
            parts.append("".join(current))
            current = []
            continue
        current.append(char)
    parts.append("".join(current))
    return parts


def unwrap_optional(type_: Any) -> Tuple[Any, bool]:
    """Return (inner type, is_optional) for ``Optional[X]`` annotations."""
    if get_origin(type_) is Union:
        args = [arg for arg in get_args(type_) if arg is not type(None)]
        if len(args) == 1:
            return args[0], True
    return type_, False


def iter_fields(schema: type, prefix: str = "") -> Iterator[Tuple[str, Field]]:
    """Yield (column name, field) pairs in declaration order, bases first.

    A subclass redefining an attribute replaces the base field in place.
    """
    fields: Dict[str, Optional[Field]] = {}
    for klass in reversed(schema.__mro__):
        if klass is object or klass is Entity:
            continue
        for attr_name, value in vars(klass).items():
            if attr_name.startswith("_"):
                continue
            if isinstance(value, Embedded):
                for column_name, embedded_field in iter_fields(value.schema, prefix + value.prefix):
                    fields[column_name] = embedded_field
            elif isinstance(value, Field):
                fields[prefix + attr_name] = None if value.excluded else value

    for column_name, column_field in fields.items():
        if column_field is not None:
            yield column_name, column_field
