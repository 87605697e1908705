from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

ScheduleType = Literal["cron", "interval", "once"]
ContextMode = Literal["isolated", "group"]


class Chat(BaseModel):
    chat_id: str
    name: str | None = None
    last_message_time: str | None = None


class Message(BaseModel):
    id: str
    chat_id: str
    sender: str
    sender_name: str | None = None
    content: str
    timestamp: str
    is_from_me: bool = False


class RegisteredGroup(BaseModel):
    name: str
    folder: str
    trigger: str
    added_at: str
    worker_config: dict[str, Any] | None = None


class ScheduledTask(BaseModel):
    id: str
    group_folder: str
    chat_id: str
    prompt: str
    schedule_type: str
    schedule_value: str
    context_mode: str = "isolated"
    next_run: str | None = None
    last_run: str | None = None
    last_result: str | None = None
    status: str = "active"
    created_at: str


class TaskRunLog(BaseModel):
    id: int | None = None
    task_id: str
    run_at: str
    duration_ms: int
    status: str
    result: str | None = None
    error: str | None = None


class WorkerInput(BaseModel):
    prompt: str
    group_folder: str
    chat_id: str
    session_id: str | None = None
    is_main: bool = False
    worker_config: dict[str, Any] | None = None


class WorkerOutput(BaseModel):
    status: Literal["success", "error"]
    result: str | None = None
    new_session_id: str | None = None
    error: str | None = None


class AvailableGroup(BaseModel):
    chat_id: str
    name: str | None = None
    last_activity: str | None = None
    is_registered: bool


# Mailbox requests written by workers into ipc/<folder>/{messages,tasks}/.
# Field aliases are the camelCase keys workers put on the wire.  Nothing in
# these payloads says who sent them: the source folder is the directory the
# file was found in.


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class SendMessageRequest(_Request):
    type: Literal["message"]
    chat_id: str = Field(alias="chatId", min_length=1)
    text: str = Field(min_length=1)


class ScheduleTaskRequest(_Request):
    type: Literal["schedule_task"]
    prompt: str = Field(min_length=1)
    schedule_type: ScheduleType
    schedule_value: str = Field(min_length=1)
    context_mode: ContextMode = "isolated"
    group_folder: str = Field(alias="groupFolder", min_length=1)

    @field_validator("context_mode", mode="before")
    @classmethod
    def _default_context_mode(cls, value: Any) -> Any:
        return value if value in ("group", "isolated") else "isolated"

    @field_validator("schedule_value", mode="before")
    @classmethod
    def _stringify_interval(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class PauseTaskRequest(_Request):
    type: Literal["pause_task"]
    task_id: str = Field(alias="taskId", min_length=1)


class ResumeTaskRequest(_Request):
    type: Literal["resume_task"]
    task_id: str = Field(alias="taskId", min_length=1)


class CancelTaskRequest(_Request):
    type: Literal["cancel_task"]
    task_id: str = Field(alias="taskId", min_length=1)


class RefreshGroupsRequest(_Request):
    type: Literal["refresh_groups"]


class RegisterGroupRequest(_Request):
    """Fields are optional on the wire; completeness is checked by the
    authorization gateway so that a partial request is a logged denial."""

    type: Literal["register_group"]
    chat_id: str | None = Field(default=None, alias="chatId")
    name: str | None = None
    folder: str | None = None
    trigger: str | None = None
    worker_config: dict[str, Any] | None = Field(default=None, alias="workerConfig")


TaskRequest = Annotated[
    ScheduleTaskRequest
    | PauseTaskRequest
    | ResumeTaskRequest
    | CancelTaskRequest
    | RefreshGroupsRequest
    | RegisterGroupRequest,
    Field(discriminator="type"),
]

MailboxRequest = SendMessageRequest | TaskRequest

message_request_adapter: TypeAdapter[SendMessageRequest] = TypeAdapter(
    SendMessageRequest
)
task_request_adapter: TypeAdapter[TaskRequest] = TypeAdapter(TaskRequest)
