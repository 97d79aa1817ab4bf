"""
Screen controllers.

Each screen owns one live query over its collection, a projection of the latest
snapshot through the local filters, and the small policy of who may change what.
Screens never update their lists optimistically; writes show up when the next
snapshot arrives.

Client-side gates are a convenience only. The store's own rules decide, and a
store-side denial is reported like any other failed action.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple, Type

from pydantic import ValidationError

from database import DocumentStore, Filter, QuerySpec
from errors import NotAllowedError, StorageUnavailableError, StoreError, SubjectInUseError
from live_query import LiveQuery, SubscriptionState, fetch_once
from mutations import MutationGateway, MutationOutcome
from projector import ALL, expiry_status, is_expired, project, tally
from schemas import (
    ANNOUNCEMENTS,
    ANONYMOUS_NAME,
    FREEDOM_WALL_POSTS,
    REPORTS,
    ROLES,
    SUBJECTS,
    TASK_STATUSES,
    TASKS,
    USERS,
    Announcement,
    AnnouncementBody,
    Document,
    FreedomWallPost,
    Identity,
    PostBody,
    Report,
    RoleChangeBody,
    Subject,
    SubjectBody,
    Task,
    TaskBody,
    UserProfile,
)

logger = logging.getLogger(__name__)

# Reports only move forward: Pending -> Reviewed -> Resolved
REPORT_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "Pending": ("Reviewed",),
    "Reviewed": ("Resolved",),
    "Resolved": (),
}


def _listen(listeners: list, callback) -> Callable[[], None]:
    listeners.append(callback)

    def dispose():
        if callback in listeners:
            listeners.remove(callback)

    return dispose


class Notice(NamedTuple):
    level: str  # success | error
    title: str
    message: str
    details: str = ""


class PendingAction:
    """A destructive action waiting for explicit confirmation. Runs at most once."""

    def __init__(self, description: str, perform: Callable[[], Awaitable[MutationOutcome]]):
        self.description = description
        self._perform = perform
        self._future: Optional[asyncio.Future] = None
        self.cancelled = False

    @property
    def confirmed(self) -> bool:
        return self._future is not None

    async def confirm(self) -> MutationOutcome:
        if self.cancelled:
            raise NotAllowedError("This action was cancelled.")
        if self._future is None:
            self._future = asyncio.ensure_future(self._perform())
        return await self._future

    def cancel(self) -> None:
        if self._future is None:
            self.cancelled = True


class ListScreen:
    collection = ""
    model: Type[Document] = Document
    order_by: Optional[str] = "createdAt"
    noun = "items"
    search_fields: Sequence[Any] = ()
    category_field: Optional[str] = None
    denied_message = "Access denied. You do not have permission to view these items."

    def __init__(self, store: DocumentStore, gateway: MutationGateway, session):
        self.store = store
        self.gateway = gateway
        self.session = session
        self.state = SubscriptionState.LOADING
        self.items: List[Any] = []
        self.visible: List[Any] = []
        self.error: Optional[StoreError] = None
        self.error_message = ""
        self.search = ""
        self.category = ALL
        self._live: Optional[LiveQuery] = None
        self._closed = True
        self._change_listeners: List[Callable[["ListScreen"], None]] = []
        self._notice_listeners: List[Callable[[Notice], None]] = []

    # lifecycle

    def query(self) -> QuerySpec:
        return QuerySpec(collection=self.collection, order_by=self.order_by)

    @property
    def closed(self) -> bool:
        return self._closed

    def open(self) -> "ListScreen":
        if not self._closed:
            return self
        self._closed = False
        self._subscribe()
        return self

    def close(self) -> None:
        self._closed = True
        self._release()

    def retry(self) -> None:
        """Drop the current subscription and start over from Loading."""
        if self._closed:
            return
        self._release()
        self._subscribe()
        self._changed()

    def _subscribe(self) -> None:
        self.state = SubscriptionState.LOADING
        self.error = None
        self.error_message = ""
        if self.session.current is None:
            self.state = SubscriptionState.ERROR
            self.error_message = "Not authenticated."
            return
        self._live = LiveQuery(self.store, self.query(), self._on_snapshot, self._on_error)
        self._live.start()

    def _release(self) -> None:
        live, self._live = self._live, None
        if live is not None:
            live.dispose()

    def _on_snapshot(self, docs: List[Dict[str, Any]]) -> None:
        items = []
        for doc in docs:
            try:
                items.append(self.model.from_document(doc))
            except ValidationError as exc:
                logger.warning("Skipping malformed %s document %s: %s", self.noun, doc.get("id"), exc)
        self.items = items
        self.state = SubscriptionState.READY
        self.error = None
        self.error_message = ""
        self._derive()
        self._reproject()
        self._changed()

    def _derive(self) -> None:
        """Recompute snapshot-wide figures (counts, stats) after each delivery."""

    def _on_error(self, exc: StoreError) -> None:
        self.state = SubscriptionState.ERROR
        self.error = exc
        if exc.denied:
            self.error_message = self.denied_message
        else:
            self.error_message = f"Failed to load {self.noun}: {exc.message}"
        logger.error("%s screen: %s", self.noun, self.error_message)
        self._changed()

    # listeners

    def on_change(self, callback: Callable[["ListScreen"], None]) -> Callable[[], None]:
        return _listen(self._change_listeners, callback)

    def on_notice(self, callback: Callable[[Notice], None]) -> Callable[[], None]:
        return _listen(self._notice_listeners, callback)

    def _changed(self) -> None:
        if self._closed:
            return
        for listener in list(self._change_listeners):
            listener(self)

    def _notify(self, notice: Notice) -> None:
        if self._closed:
            return
        for listener in list(self._notice_listeners):
            listener(notice)

    # projection

    def set_search(self, term: str) -> None:
        self.search = term or ""
        self._reproject()
        self._changed()

    def set_category(self, value: str) -> None:
        self.category = value or ALL
        self._reproject()
        self._changed()

    def _filters(self) -> Dict[str, Any]:
        return {}

    def _reproject(self) -> None:
        self.visible = project(
            self.items,
            search=self.search,
            search_fields=self.search_fields,
            category=self.category,
            category_field=self.category_field,
            **self._filters(),
        )

    def find(self, doc_id: str):
        for item in self.items:
            if item.id == doc_id:
                return item
        return None

    # actions

    def _identity(self) -> Identity:
        identity = self.session.current
        if identity is None:
            raise NotAllowedError("You must be signed in.")
        return identity

    def _require(self, doc_id: str):
        item = self.find(doc_id)
        if item is None:
            raise NotAllowedError(f"That {self.noun[:-1]} is no longer available.")
        return item

    async def _mutate(
        self,
        call: Awaitable[MutationOutcome],
        success: str,
        failure_title: str,
        denied: str,
        failure: str = "An error occurred. Please try again.",
    ) -> MutationOutcome:
        outcome = await call
        if self._closed:
            # the screen went away while the write was in flight
            return outcome
        if outcome.ok:
            self._notify(Notice("success", "Success", success))
        else:
            self._notify(Notice("error", failure_title, denied if outcome.denied else failure, outcome.message))
        return outcome


class TasksScreen(ListScreen):
    collection = TASKS
    model = Task
    noun = "tasks"
    search_fields = ("title", "description", "subject")
    category_field = "status"
    denied_message = "Access denied. You do not have permission to view tasks."

    async def create_task(self, body: TaskBody) -> MutationOutcome:
        self._identity()
        return await self._mutate(
            self.gateway.create(TASKS, body.to_fields()),
            "Task has been created successfully!",
            "Failed to Create Task",
            "You do not have permission to create tasks.",
        )

    async def update_task(self, task_id: str, body: TaskBody) -> MutationOutcome:
        self._identity()
        return await self._mutate(
            self.gateway.update(TASKS, task_id, body.to_fields()),
            "Task has been updated successfully!",
            "Failed to Update Task",
            "You do not have permission to edit this task.",
        )

    async def set_status(self, task_id: str, status: str) -> MutationOutcome:
        self._identity()
        self._require(task_id)
        if status not in TASK_STATUSES:
            raise ValueError(f"Unknown task status: {status}")
        return await self._mutate(
            self.gateway.update(TASKS, task_id, {"status": status}),
            f"Task marked as {status.lower()}!",
            "Failed to Update Task",
            "You do not have permission to edit this task.",
        )

    def request_delete(self, task_id: str) -> PendingAction:
        self._identity()
        task = self._require(task_id)
        return PendingAction(
            f"Delete task {task.title!r}?",
            lambda: self._mutate(
                self.gateway.delete(TASKS, task_id),
                "Task has been deleted successfully!",
                "Failed to Delete Task",
                "You do not have permission to delete this task.",
            ),
        )

    async def attach_image(self, task_id: str, data: bytes, filename: str) -> str:
        raise StorageUnavailableError("Image uploads are not available: no storage backend is configured.")


class AnnouncementsScreen(ListScreen):
    collection = ANNOUNCEMENTS
    model = Announcement
    noun = "announcements"
    search_fields = ("title", "content")
    category_field = "type"
    denied_message = "Access denied. You do not have permission to view announcements."

    def __init__(self, *args, clock=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.status = ALL
        self._clock = clock

    def _now(self):
        return self._clock() if self._clock else None

    def _filters(self) -> Dict[str, Any]:
        return {"status": self.status, "classify": lambda item: expiry_status(item, self._now())}

    def set_status(self, status: str) -> None:
        self.status = status or ALL
        self._reproject()
        self._changed()

    def is_expired(self, announcement: Announcement) -> bool:
        return is_expired(announcement.expires_at, self._now())

    def _require_author(self, announcement_id: str, action: str) -> Announcement:
        identity = self._identity()
        announcement = self._require(announcement_id)
        if announcement.author_id != identity.uid:
            raise NotAllowedError(f"You can only {action} your own announcements.")
        return announcement

    async def create_announcement(self, body: AnnouncementBody) -> MutationOutcome:
        self._identity()
        return await self._mutate(
            self.gateway.create(ANNOUNCEMENTS, body.to_fields()),
            "Announcement has been published successfully!",
            "Failed to Create Announcement",
            "You do not have permission to create announcements.",
        )

    async def update_announcement(self, announcement_id: str, body: AnnouncementBody) -> MutationOutcome:
        self._require_author(announcement_id, "edit")
        fields = body.to_fields()
        if body.expires_at is None:
            fields["expiresAt"] = None
        return await self._mutate(
            self.gateway.update(ANNOUNCEMENTS, announcement_id, fields),
            "Announcement has been updated successfully!",
            "Failed to Update Announcement",
            "You can only edit your own announcements.",
        )

    def request_delete(self, announcement_id: str) -> PendingAction:
        announcement = self._require_author(announcement_id, "delete")
        return PendingAction(
            f"Delete announcement {announcement.title!r}?",
            lambda: self._mutate(
                self.gateway.delete(ANNOUNCEMENTS, announcement_id),
                "Announcement has been deleted successfully!",
                "Failed to Delete Announcement",
                "You can only delete your own announcements or you need admin privileges.",
            ),
        )


class ReportsScreen(ListScreen):
    collection = REPORTS
    model = Report
    order_by = "reportedAt"
    noun = "reports"
    search_fields = ("report_type", "description")
    category_field = "status"
    denied_message = "Access denied. Admin privileges required to view reports."

    @property
    def pending_count(self) -> int:
        return sum(1 for report in self.items if report.status == "Pending")

    def available_transitions(self, report: Report) -> Tuple[str, ...]:
        return REPORT_TRANSITIONS.get(report.status, ())

    def _require_elevated(self) -> Identity:
        identity = self._identity()
        if not identity.is_elevated:
            raise NotAllowedError("Access denied. Admin privileges required to manage reports.")
        return identity

    async def advance_status(self, report_id: str, new_status: str) -> MutationOutcome:
        self._require_elevated()
        report = self._require(report_id)
        if new_status not in self.available_transitions(report):
            raise NotAllowedError(f"A {report.status.lower()} report cannot be marked as {new_status.lower()}.")
        return await self._mutate(
            self.gateway.update(REPORTS, report_id, {"status": new_status}),
            f"Report marked as {new_status.lower()}!",
            "Failed to Update Report",
            "Access denied. Admin privileges required to update reports.",
            "Failed to update report status. Please try again.",
        )

    def request_delete(self, report_id: str) -> PendingAction:
        self._require_elevated()
        self._require(report_id)
        return PendingAction(
            "Are you sure you want to delete this report?",
            lambda: self._mutate(
                self.gateway.delete(REPORTS, report_id),
                "Report deleted successfully!",
                "Failed to Delete Report",
                "Access denied. Admin privileges required to delete reports.",
                "Failed to delete report. Please try again.",
            ),
        )


class UsersScreen(ListScreen):
    collection = USERS
    model = UserProfile
    noun = "users"
    search_fields = (lambda user: user.full_name, "email")
    category_field = "role"
    denied_message = "Access denied. Admin privileges required to view users."

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.stats: Dict[str, int] = {"students": 0, "officers": 0, "admins": 0, "total": 0}

    def _derive(self) -> None:
        counts = tally(self.items, "role", ROLES)
        self.stats = {
            "students": counts["student"],
            "officers": counts["officer"],
            "admins": counts["admin"],
            "total": len(self.items),
        }

    def request_role_change(self, user_id: str, role: str) -> PendingAction:
        """Role changes are admin-only, never self-service, and always confirmed first."""
        body = RoleChangeBody(role=role)
        identity = self._identity()
        if not identity.is_admin:
            raise NotAllowedError("Access denied. Only admins can change user roles.")
        if user_id == identity.uid:
            raise NotAllowedError("You cannot change your own role.")
        user = self._require(user_id)
        return PendingAction(
            f"Change {user.full_name or user.email} from {user.role} to {body.role}?",
            lambda: self._mutate(
                self.gateway.update(USERS, user_id, body.to_fields()),
                f"{user.full_name or user.email} is now {body.role}.",
                "Failed to Change Role",
                "Access denied. Admin privileges required to change roles.",
            ),
        )


class FreedomWallScreen(ListScreen):
    collection = FREEDOM_WALL_POSTS
    model = FreedomWallPost
    noun = "posts"
    search_fields = ("content", "display_name")
    denied_message = "Access denied. You do not have permission to view freedom wall posts."

    def public_posts(self) -> List[Dict[str, Any]]:
        return [post.public_view() for post in self.visible]

    def can_delete(self, post: FreedomWallPost) -> bool:
        identity = self.session.current
        if identity is None:
            return False
        return post.author_id == identity.uid or identity.is_elevated

    async def create_post(self, content: str, anonymous: bool = False) -> MutationOutcome:
        body = PostBody(content=content, is_anonymous=anonymous)
        identity = self._identity()
        return await self._mutate(
            self.gateway.create(
                FREEDOM_WALL_POSTS,
                body.to_fields(),
                display_name=ANONYMOUS_NAME if body.is_anonymous else identity.email,
            ),
            "Post has been published successfully!",
            "Failed to Create Post",
            "You do not have permission to create posts.",
            "An error occurred while creating the post. Please try again.",
        )

    def request_delete(self, post_id: str) -> PendingAction:
        self._identity()
        post = self._require(post_id)
        if not self.can_delete(post):
            raise NotAllowedError("You can only delete your own posts or you need admin privileges.")
        return PendingAction(
            "Are you sure you want to delete this post?",
            lambda: self._mutate(
                self.gateway.delete(FREEDOM_WALL_POSTS, post_id),
                "Post has been deleted successfully!",
                "Failed to Delete Post",
                "You can only delete your own posts or you need admin privileges.",
                "An error occurred while deleting the post. Please try again.",
            ),
        )


class SubjectsScreen(ListScreen):
    """Subjects referenced by tasks cannot be deleted.

    Unlike the other screens, ``request_delete`` is a coroutine: it first queries
    the tasks collection for references and raises ``SubjectInUseError`` if any exist.
    """

    collection = SUBJECTS
    model = Subject
    order_by = None
    noun = "subjects"
    search_fields = ("code", "name")
    denied_message = "Access denied. You do not have permission to view subjects."

    async def create_subject(self, body: SubjectBody) -> MutationOutcome:
        self._identity()
        return await self._mutate(
            self.gateway.create(SUBJECTS, body.to_fields()),
            "Subject has been created successfully!",
            "Failed to Save Subject",
            "You do not have permission to create subjects.",
            "Failed to save subject",
        )

    async def update_subject(self, subject_id: str, body: SubjectBody) -> MutationOutcome:
        self._identity()
        return await self._mutate(
            self.gateway.update(SUBJECTS, subject_id, body.to_fields()),
            "Subject has been updated successfully!",
            "Failed to Save Subject",
            "You do not have permission to edit subjects.",
            "Failed to save subject",
        )

    async def request_delete(self, subject_id: str) -> PendingAction:
        """Refuses while any task still references the subject."""
        self._identity()
        subject = self._require(subject_id)
        tasks = await fetch_once(
            self.store,
            QuerySpec(collection=TASKS, filters=(Filter(field="subjectId", value=subject_id),)),
        )
        if tasks:
            raise SubjectInUseError(subject_id, len(tasks))
        return PendingAction(
            f"Are you sure you want to delete {subject.code}?",
            lambda: self._mutate(
                self.gateway.delete(SUBJECTS, subject_id),
                "Subject has been deleted successfully!",
                "Failed to Delete Subject",
                "You do not have permission to delete subjects.",
                "Failed to delete subject",
            ),
        )


SCREENS: Dict[str, Type[ListScreen]] = {
    "tasks": TasksScreen,
    "announcements": AnnouncementsScreen,
    "reports": ReportsScreen,
    "users": UsersScreen,
    "freedom-wall": FreedomWallScreen,
    "subjects": SubjectsScreen,
}
