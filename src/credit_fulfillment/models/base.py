from __future__ import annotations

from typing import Any, ClassVar, Dict, Mapping, Optional

from pydantic import BaseModel


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model that knows how to:
    - Serialize itself for record-store persistence
    - Provide a backend-agnostic schema description derived from fields

    The concrete collection/table definitions are produced offline by the
    schema generator from this description.
    """

    # Logical collection / table name; subclasses should override
    collection_name: ClassVar[str]

    # Optional explicit primary key field; defaults to "id" if present
    primary_key: ClassVar[Optional[str]] = "id"

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for persistence.

        Single place to control how models are stored; adapters can still
        post-process the result.
        """
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        """
        Return a backend-agnostic schema description derived from model fields.
        """
        fields: Mapping[str, Any] = cls.model_fields

        properties: Dict[str, Any] = {}
        required: list[str] = []

        for name, field in fields.items():
            # Factory defaults are computed at insert time, not declared.
            static_default = field.default_factory is None and not field.is_required()
            properties[name] = {
                "type": cls._map_type(field.annotation),
                "nullable": not field.is_required(),
                "default": field.default if static_default else None,
                "description": field.description,
            }
            if field.is_required():
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "properties": properties,
            "required": required,
        }

    @staticmethod
    def _map_type(annotation: Any) -> str:
        """
        Map a Python annotation to a generic logical type.
        """
        origin: Any = getattr(annotation, "__origin__", None)
        if origin is list or origin is tuple or origin is set:
            return "array"
        if origin is dict:
            return "object"

        # Optional[X] shows up as a Union; unwrap the single non-None member
        args = getattr(annotation, "__args__", None)
        if args and type(None) in args:
            members = [a for a in args if a is not type(None)]
            if len(members) == 1:
                return DBSerializableModel._map_type(members[0])

        if annotation in (bool,):
            return "boolean"
        if annotation in (int,):
            return "integer"
        if annotation in (float,):
            return "number"
        if annotation in (str,):
            return "string"

        name = getattr(annotation, "__name__", "object")
        return name.lower()
