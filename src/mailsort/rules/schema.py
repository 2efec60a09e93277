"""
Schema for auto-sort rules: condition trees and actions
"""
import uuid
from datetime import date, datetime, timezone
from typing import Annotated, Iterator, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

ConditionField = Literal[
    'text', 'from', 'to', 'subject', 'body', 'after', 'before',
    'has', 'filename', 'attachment', 'folder', 'is',
]

SUPPORTED_FIELDS = frozenset(ConditionField.__args__)
TEXT_FIELDS = frozenset({'text', 'from', 'to', 'subject', 'body', 'filename', 'attachment', 'folder'})
DATE_FIELDS = frozenset({'after', 'before'})
QUICK_FILTERS = ('unread', 'read', 'starred', 'draft')
HAS_VALUES = ('attachment',)

# Leaves on these fields can only be decided with the full message
FULL_MESSAGE_FIELDS = frozenset({'text', 'body', 'attachment', 'filename'})

QuickFilterType = Literal['unread', 'read', 'starred', 'draft']


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_rule_id() -> str:
    return f"rule_{uuid.uuid4().hex[:12]}"


class FilterCondition(BaseModel):
    """A single leaf predicate of a condition tree"""
    field: ConditionField
    op: Literal['contains', 'matches', 'gte', 'lte', 'is'] = 'contains'
    value: str
    negate: bool = False

    @field_validator('value', mode='before')
    @classmethod
    def _stringify(cls, value):
        if isinstance(value, bool):
            return 'attachment' if value else ''
        if isinstance(value, (date, datetime)):
            return value.isoformat()[:10]
        return value

    @model_validator(mode='after')
    def _normalize(self) -> 'FilterCondition':
        # op is fully determined by the field and the value
        if self.field in DATE_FIELDS:
            try:
                date.fromisoformat(self.value[:10])
            except ValueError:
                raise ValueError(f"Invalid date for {self.field}: {self.value!r}")
            self.value = self.value[:10]
            self.op = 'gte' if self.field == 'after' else 'lte'
        elif self.field == 'has':
            value = self.value.lower().rstrip('s')
            if value not in HAS_VALUES:
                raise ValueError(f"Unsupported has: value {self.value!r}")
            self.value = value
            self.op = 'is'
        elif self.field == 'is':
            value = self.value.lower()
            if value not in QUICK_FILTERS:
                raise ValueError(f"Unsupported is: value {self.value!r}")
            self.value = value
            self.op = 'is'
        else:
            self.op = 'matches' if ('*' in self.value or '?' in self.value) else 'contains'
        return self

    @property
    def boundary(self) -> date:
        """Boundary day of a date condition"""
        return date.fromisoformat(self.value)


class FilterGroup(BaseModel):
    """Nested AND/OR group of conditions"""
    operator: Literal['AND', 'OR'] = Field('AND', validation_alias=AliasChoices('operator', 'logic'))
    conditions: List[FilterCondition] = []
    groups: List['FilterGroup'] = []

    @field_validator('operator', mode='before')
    @classmethod
    def _upper(cls, value):
        return value.upper() if isinstance(value, str) else value

    def iter_conditions(self) -> Iterator[FilterCondition]:
        """Yield every leaf of the tree, depth first"""
        yield from self.conditions
        for group in self.groups:
            yield from group.iter_conditions()

    def is_empty(self) -> bool:
        return next(self.iter_conditions(), None) is None


class _Action(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='forbid')


class MoveToFolderAction(_Action):
    type: Literal['moveToFolder']
    folder_id: str = Field(alias='folderId', min_length=1)


class LabelAction(_Action):
    type: Literal['label']
    label_ids: List[str] = Field(alias='labelIds', min_length=1)


class MarkReadAction(_Action):
    type: Literal['markRead']


class MarkImportantAction(_Action):
    type: Literal['markImportant']


class AutoArchiveAction(_Action):
    type: Literal['autoArchive']
    days: int = Field(ge=0)


class AutoDeleteAction(_Action):
    type: Literal['autoDelete']
    days: int = Field(ge=0)


class ForwardAction(_Action):
    type: Literal['forward']
    email: str = Field(pattern=r'^[^@\s]+@[^@\s]+$')


class NotifyAction(_Action):
    type: Literal['notify']
    service: str = Field(min_length=1)
    target: str = Field(min_length=1)


class DeleteAction(_Action):
    type: Literal['delete']


Action = Annotated[
    Union[
        MoveToFolderAction, LabelAction, MarkReadAction, MarkImportantAction,
        AutoArchiveAction, AutoDeleteAction, ForwardAction, NotifyAction, DeleteAction,
    ],
    Field(discriminator='type'),
]


class AutoSortRule(BaseModel):
    """A named, enable-able pair of condition tree and ordered actions"""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=new_rule_id)
    name: str = Field(min_length=1, max_length=100)
    enabled: bool = True
    conditions: FilterGroup
    actions: List[Action] = Field(min_length=1)
    priority: int = 0
    apply_to_existing: bool = Field(False, alias='applyToExisting')
    created_at: datetime = Field(default_factory=_utcnow, alias='createdAt')
    updated_at: datetime = Field(default_factory=_utcnow, alias='updatedAt')

    @field_validator('conditions')
    @classmethod
    def _not_empty(cls, conditions: FilterGroup) -> FilterGroup:
        if conditions.is_empty():
            raise ValueError('Rule conditions are empty')
        return conditions

    def to_json(self) -> dict:
        return self.model_dump(mode='json', by_alias=True)


class RulesConfig(BaseModel):
    """Schema for a rules file (import/export)"""
    rules: List[AutoSortRule]


class ParseResult(BaseModel):
    """Outcome of parsing a search-bar query"""
    quick_filter: Optional[QuickFilterType] = None
    filter_group: Optional[FilterGroup] = None
    unknown_fields: List[str] = []
