"""
Base Command model

Commands represent intentions to change an aggregate. They carry no
business logic: a handler loads the aggregate, calls a business method
with the command's data, and saves the aggregate under the command's id.

Fun fact: Bertrand Meyer's "Command-Query Separation" principle from 1988
is the grandparent of CQRS - commands change things, queries don't.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from durable_aggregates.kernel.ids import new_commit_id
from durable_aggregates.kernel.time import utc_now


class Command(BaseModel):
    """
    Base command class - all domain commands inherit from this

    The command_id doubles as the commit id of the events it produces,
    which makes a retried save of the same command idempotent.
    """

    model_config = ConfigDict(frozen=True)

    command_id: str = Field(
        default_factory=new_commit_id,
        description="Unique command identifier (commit/causation id)",
    )

    command_type: str = Field(
        default="",
        description="Type of command (defaults to the class name)",
    )

    aggregate_id: str = Field(
        ...,
        description="Target aggregate",
    )

    who: str | None = Field(
        default=None,
        description="Actor issuing the command (None for system commands)",
    )

    issued_at: datetime = Field(
        default_factory=utc_now,
        description="UTC timestamp when the command was issued",
    )

    user_properties: dict[str, Any] = Field(
        default_factory=dict,
        description="Free-form caller metadata (must be JSON-serializable)",
    )

    @model_validator(mode="before")
    @classmethod
    def _default_command_type(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("command_type"):
            data = {**data, "command_type": cls.__name__}
        return data
