"""Application state and the controller that mutates it.

Views read from ``AppState`` and call ``TrackerController`` intents; only the
controller talks to the API client. The server is the source of truth, the
state is a per-browser-session cache of it.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from collections import OrderedDict
from enum import Enum
from typing import Optional

from tracker_api import ApiError

logger = logging.getLogger(__name__)

STUDENT_FIELDS = ("name", "rollNo", "className")
SCORE_FIELDS = ("subject", "marks")


class ValidationError(Exception):
    """Required form fields are missing; raised before any request is sent."""


class AuthenticationError(Exception):
    """The server rejected a login or registration."""


class LoadStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    LOADED = "loaded"
    PARTIAL = "loaded-with-partial-failures"


def student_key(record) -> Optional[str]:
    """Identifier of a server record (``_id``, falling back to ``id``)."""
    if not isinstance(record, dict):
        return None
    value = record.get("_id", record.get("id"))
    return str(value) if value is not None else None


def _blank(fields) -> dict:
    return {name: "" for name in fields}


class AppState:
    """Everything one browser session knows about the remote data."""

    def __init__(self):
        self.auth_mode = "login"
        self.started = False
        self.reset()

    def reset(self):
        """Drop all cached data (used on logout)."""
        self.token: Optional[str] = None
        self.students: list[dict] = []
        self.performance: dict[str, list] = {}
        self.status = LoadStatus.IDLE
        self.last_viewed: Optional[dict] = None
        self.student_draft = _blank(STUDENT_FIELDS)
        self.score_draft = _blank(SCORE_FIELDS)

    @property
    def loading(self) -> bool:
        return self.status == LoadStatus.LOADING

    def find_student(self, sid: str) -> Optional[dict]:
        for student in self.students:
            if student_key(student) == sid:
                return student
        return None

    def resolve_student(self, sid: str) -> Optional[dict]:
        """Loaded list first, then the last viewed student if the id matches."""
        student = self.find_student(sid)
        if student is None and self.last_viewed is not None and student_key(self.last_viewed) == sid:
            student = self.last_viewed
        return student

    def scores_for(self, sid: Optional[str]) -> list:
        return self.performance.get(sid) or []

    def overview_cards(self) -> list[dict]:
        # Server order is trusted: the first score is shown as the latest.
        cards = []
        for student in self.students:
            sid = student_key(student)
            scores = self.scores_for(sid)
            cards.append({
                "id": sid,
                "student": student,
                "scores": scores,
                "latest": scores[0] if scores else None,
            })
        return cards


class StateRegistry:
    """In-memory map of browser-session keys to their ``AppState``.

    Least recently used entries are dropped once ``max_entries`` is exceeded.
    """

    def __init__(self, max_entries: int = 500):
        self.max_entries = max_entries
        self._states: OrderedDict[str, AppState] = OrderedDict()

    def __len__(self):
        return len(self._states)

    def get(self, key: Optional[str]) -> Optional[AppState]:
        if not key or key not in self._states:
            return None
        self._states.move_to_end(key)
        return self._states[key]

    def create(self) -> tuple[str, AppState]:
        key = secrets.token_urlsafe(18)
        state = AppState()
        self._states[key] = state
        while len(self._states) > self.max_entries:
            evicted, _ = self._states.popitem(last=False)
            logger.info("Evicted idle session state %s", evicted[:6])
        return key, state

    def discard(self, key: Optional[str]) -> None:
        if key:
            self._states.pop(key, None)


class TrackerController:
    """Session controller and student/performance store intents."""

    def __init__(self, state: AppState, api, storage):
        self.state = state
        self.api = api
        self.storage = storage

    # ---------- session ----------

    async def start(self):
        """First contact for this state: resume a stored token without verifying it."""
        if self.state.started:
            return
        self.state.started = True
        token = self.storage.get_token()
        if token:
            self.state.token = token
            await self.load_students()

    def set_auth_mode(self, mode: str):
        self.state.auth_mode = "register" if mode == "register" else "login"

    async def login(self, email: str, password: str):
        try:
            data = await self.api.post("/login", {"email": email, "password": password})
        except ApiError as exc:
            logger.info("Login rejected for %s: %s", email, exc)
            raise AuthenticationError("Invalid credentials") from exc

        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            logger.warning("Login response for %s carried no token", email)
            raise AuthenticationError("Invalid credentials")

        self.state.reset()
        self.storage.set_token(token)
        self.state.token = token
        self.state.auth_mode = "login"
        self.state.started = True
        logger.info("User %s logged in", email)
        await self.load_students()

    async def register(self, name: str, email: str, password: str):
        try:
            await self.api.post("/register", {"name": name, "email": email, "password": password})
        except ApiError as exc:
            logger.info("Registration failed for %s: %s", email, exc)
            raise AuthenticationError("Unable to register") from exc
        self.state.auth_mode = "login"
        logger.info("Registered account %s", email)

    def logout(self):
        self.storage.clear_token()
        self.state.reset()
        self.state.auth_mode = "login"
        logger.info("User logged out")

    # ---------- loading ----------

    async def load_students(self):
        self.state.status = LoadStatus.LOADING
        try:
            data = await self.api.get("/students")
        except ApiError as exc:
            logger.warning("Error loading students: %s", exc)
            self.state.students = []
            self.state.performance = {}
            self.state.status = LoadStatus.PARTIAL
            return

        students = data if isinstance(data, list) else []
        self.state.students = students
        failed = await self.load_performance_summary(students)
        self.state.status = LoadStatus.PARTIAL if failed else LoadStatus.LOADED
        logger.info("Loaded %d students (%d performance fetches failed)", len(students), len(failed))

    async def load_performance_summary(self, students) -> list:
        """Rebuild the whole performance index; returns the ids whose fetch failed.

        All fetches run concurrently and the new index is committed only after
        every one of them has settled. A failed fetch yields an empty entry.
        """
        if not isinstance(students, list) or not students:
            self.state.performance = {}
            return []

        ids = [student_key(student) for student in students]
        results = await asyncio.gather(
            *(self.api.get(f"/performance/{sid}") for sid in ids),
            return_exceptions=True,
        )

        index = {}
        failed = []
        for sid, result in zip(ids, results):
            if isinstance(result, Exception):
                logger.warning("Error loading performance for student %s: %s", sid, result)
                index[sid] = []
                failed.append(sid)
            else:
                index[sid] = result if isinstance(result, list) else []
        self.state.performance = index
        return failed

    async def refresh_student_performance(self, sid: str):
        try:
            data = await self.api.get(f"/performance/{sid}")
        except ApiError as exc:
            logger.warning("Error loading student performance for %s: %s", sid, exc)
            return
        self.state.performance = {**self.state.performance, sid: data if isinstance(data, list) else []}

    async def view_student(self, sid: str, refresh: bool = True) -> Optional[dict]:
        """Resolve a student for the detail view and refresh their scores.

        ``refresh=False`` skips the fetch when the entry was just refreshed.
        """
        student = self.state.resolve_student(sid)
        if student is None:
            return None
        self.state.last_viewed = student
        if refresh:
            await self.refresh_student_performance(sid)
        return student

    # ---------- mutations ----------

    async def add_student(self, name: str, roll_no: str, class_name: str):
        fields = {"name": name, "rollNo": roll_no, "className": class_name}
        self.state.student_draft = dict(fields)
        if not all(fields.values()):
            raise ValidationError("Please fill name, roll no, and class.")

        await self.api.post("/students", fields)
        self.state.student_draft = _blank(STUDENT_FIELDS)
        await self.load_students()

    async def delete_student(self, sid: str):
        await self.api.delete(f"/students/{sid}")
        await self.load_students()

    async def add_performance(self, sid: str, subject: str, marks: str):
        self.state.score_draft = {"subject": subject, "marks": marks}
        if not subject or not marks:
            raise ValidationError("Please add subject and marks.")

        await self.api.post("/performance", {"studentId": sid, "subject": subject, "marks": marks})
        self.state.score_draft = _blank(SCORE_FIELDS)
        await self.refresh_student_performance(sid)
