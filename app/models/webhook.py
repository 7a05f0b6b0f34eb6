"""Inbound webhook payload models."""

from pydantic import BaseModel, ConfigDict, Field

from app.models.execution import CommentContext


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class TaskInfo(_Payload):
    id: str
    title: str = ""
    description: str | None = ""


class ListInfo(_Payload):
    id: str | None = None
    name: str | None = None
    github_repository_id: str | None = Field(default=None, alias="githubRepositoryId")


class AgentInfo(_Payload):
    id: str | None = None
    name: str | None = None
    email: str | None = None
    type: str | None = None
    model: str | None = None


class McpInfo(_Payload):
    access_token: str | None = Field(default=None, alias="accessToken")


class CommentAuthor(_Payload):
    name: str | None = None


class CommentInfo(_Payload):
    content: str | None = None
    body: str | None = None
    author: CommentAuthor | None = None
    author_name: str | None = Field(default=None, alias="authorName")
    created_at: str | None = Field(default=None, alias="createdAt")

    @property
    def text(self) -> str:
        return self.content or self.body or ""

    def to_context(self) -> CommentContext:
        author = (self.author.name if self.author else None) or self.author_name
        return CommentContext(
            author_name=author or "Unknown",
            content=self.text,
            created_at=self.created_at,
        )


class WebhookPayload(_Payload):
    """Envelope shared by ``task.assigned`` and ``comment.created``."""

    task: TaskInfo
    task_list: ListInfo | None = Field(default=None, alias="list")
    ai_agent: AgentInfo | None = Field(default=None, alias="aiAgent")
    mcp: McpInfo | None = None
    comments: list[CommentInfo] = Field(default_factory=list)
    comment: CommentInfo | None = None
