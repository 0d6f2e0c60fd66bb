"""Base model for wire and persisted payloads."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Serializes camelCase (``by_alias=True``) and accepts either spelling."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
