"""Shared schema base classes.

Wire format is camelCase (``depositAmount``, ``negotiationRound``,
``toyyibPayBillCode``); snake_case input is accepted as well.
"""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CamelResponse(CamelModel):
    model_config = ConfigDict(from_attributes=True)


def enum_value(v: object) -> str:
    if hasattr(v, "value"):
        return v.value
    return str(v)
