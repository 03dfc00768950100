"""Target-agnostic revision records written by export and replayed by import."""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


class StringValue(BaseModel):
    kind: Literal["string"] = "string"
    value: str

    @property
    def raw(self) -> Any:
        return self.value


class NumberValue(BaseModel):
    kind: Literal["number"] = "number"
    value: Union[int, float]

    @property
    def raw(self) -> Any:
        return self.value


class DateValue(BaseModel):
    kind: Literal["date"] = "date"
    value: datetime

    @property
    def raw(self) -> Any:
        return self.value


class IdentityValue(BaseModel):
    """A user reference, already resolved through the user mapping."""

    kind: Literal["identity"] = "identity"
    value: str

    @property
    def raw(self) -> Any:
        return self.value


class EmptyValue(BaseModel):
    """The source explicitly cleared the field."""

    kind: Literal["empty"] = "empty"

    @property
    def raw(self) -> Any:
        return None


FieldValue = Annotated[
    Union[StringValue, NumberValue, DateValue, IdentityValue, EmptyValue],
    Field(discriminator="kind"),
]


def field_value(raw: Any) -> Union[StringValue, NumberValue, DateValue, IdentityValue, EmptyValue]:
    """Wrap a scalar in its tagged field value.

    Args:
        raw: None, str, bool, int, float or datetime

    Returns:
        Tagged value

    Raises:
        TypeError: If the value is not a scalar
    """
    if raw is None:
        return EmptyValue()
    if isinstance(raw, (StringValue, NumberValue, DateValue, IdentityValue, EmptyValue)):
        return raw
    if isinstance(raw, bool):
        return StringValue(value=str(raw).lower())
    if isinstance(raw, (int, float)):
        return NumberValue(value=raw)
    if isinstance(raw, datetime):
        return DateValue(value=raw)
    if isinstance(raw, str):
        return StringValue(value=raw)
    raise TypeError(f"Unsupported field value type: {type(raw).__name__}")


class WiField(BaseModel):
    """One field change of a revision."""

    reference_name: str
    value: FieldValue = Field(default_factory=EmptyValue)

    @field_validator("value", mode="before")
    @classmethod
    def coerce_value(cls, v: Any) -> Any:
        if isinstance(v, dict) and "kind" in v:
            return v
        try:
            return field_value(v)
        except TypeError as e:
            raise ValueError(str(e)) from e

    @property
    def raw(self) -> Any:
        return self.value.raw

    def __str__(self) -> str:
        raw = self.raw
        return f"[{self.reference_name}]={'' if raw is None else raw}"


class ReferenceChangeType(str, Enum):
    ADDED = "Added"
    REMOVED = "Removed"


class WiLink(BaseModel):
    """A link action. Work item ids are resolved at replay time only."""

    change: ReferenceChangeType
    source_origin_id: str
    target_origin_id: str
    wi_type: str
    source_wi_id: Optional[int] = Field(default=None, exclude=True)
    target_wi_id: Optional[int] = Field(default=None, exclude=True)

    def __str__(self) -> str:
        return (
            f"[{self.change.value}] {self.wi_type} "
            f"{self.source_origin_id}->{self.target_origin_id}"
        )


class WiAttachment(BaseModel):
    """An attachment action."""

    change: ReferenceChangeType
    att_origin_id: str
    file_path: str
    comment: Optional[str] = None

    @property
    def file_name(self) -> str:
        return self.file_path.replace("\\", "/").rsplit("/", 1)[-1]

    def __str__(self) -> str:
        return f"{self.change.value} {self.file_name} ({self.att_origin_id})"


class WiRevision(BaseModel):
    """One replayable change set of an item."""

    parent_origin_id: Optional[str] = Field(default=None, exclude=True)
    index: int = Field(ge=0)
    time: datetime
    author: Optional[str] = None
    fields: List[WiField] = Field(default_factory=list)
    links: List[WiLink] = Field(default_factory=list)
    attachments: List[WiAttachment] = Field(default_factory=list)
    attachment_references: bool = False

    def get_field(self, reference_name: str) -> Optional[WiField]:
        return next((f for f in self.fields if f.reference_name == reference_name), None)

    def __str__(self) -> str:
        return f"'{self.parent_origin_id}', rev {self.index}"


class WiItem(BaseModel):
    """A migratable item with its ordered revisions."""

    origin_id: str
    type: str
    wi_id: Optional[int] = Field(default=None, exclude=True)
    revisions: List[WiRevision] = Field(default_factory=list)

    def __str__(self) -> str:
        return f"{self.type} '{self.origin_id}'"


class WiIteration(BaseModel):
    """An exported sprint, used for iteration node attributes."""

    name: str
    origin_id: Optional[str] = None
    state: Optional[str] = None
    goal: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    complete_date: Optional[datetime] = None
