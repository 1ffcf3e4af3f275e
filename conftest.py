import importlib
import json

import httpx
import pytest

BASE_URL = "http://backend.test/api"
PREFIX = "/api"
TOKEN = "token-abc"
EMAIL = "teacher@example.com"
PASSWORD = "secret"


class FakeBackend:
    """In-memory stand-in for the student performance REST API."""

    def __init__(self):
        self.users = {EMAIL: PASSWORD}
        self.students = []
        self.scores = {}
        self.failing = set()
        self.students_down = False
        self.calls = []
        self._next_id = 1

    def _new_id(self, prefix):
        value = f"{prefix}{self._next_id}"
        self._next_id += 1
        return value

    def add_student(self, name, roll_no="1", class_name="10-A", scores=None):
        student = {"_id": self._new_id("stu"), "name": name, "rollNo": roll_no, "className": class_name}
        self.students.append(student)
        self.scores[student["_id"]] = list(scores or [])
        return student

    def performance_calls(self, student_id=None):
        return [
            path for method, path, _ in self.calls
            if method == "GET" and path.startswith("/performance/")
            and (student_id is None or path == f"/performance/{student_id}")
        ]

    def mutating_calls(self):
        return [(method, path) for method, path, _ in self.calls if method in ("POST", "DELETE")]

    def __call__(self, request):
        path = request.url.path[len(PREFIX):]
        method = request.method
        auth = request.headers.get("authorization")
        self.calls.append((method, path, auth))
        body = json.loads(request.content) if request.content else {}

        if method == "POST" and path == "/login":
            if body.get("email") in self.users and self.users[body["email"]] == body.get("password"):
                return httpx.Response(200, json={"token": TOKEN})
            return httpx.Response(401, json={"message": "Invalid credentials"})
        if method == "POST" and path == "/register":
            if not body.get("email") or body["email"] in self.users:
                return httpx.Response(400, json={"message": "User exists"})
            self.users[body["email"]] = body.get("password")
            return httpx.Response(201, json={"message": "Registered"})

        if auth != f"Bearer {TOKEN}":
            return httpx.Response(401, json={"message": "Unauthorized"})

        if path == "/students" and method == "GET":
            if self.students_down:
                return httpx.Response(503)
            return httpx.Response(200, json=list(self.students))
        if path == "/students" and method == "POST":
            student = self.add_student(body["name"], body["rollNo"], body["className"])
            return httpx.Response(201, json=student)
        if path.startswith("/students/") and method == "DELETE":
            student_id = path.rsplit("/", 1)[1]
            self.students = [s for s in self.students if s["_id"] != student_id]
            return httpx.Response(200, json={"message": "Deleted"})
        if path.startswith("/performance/") and method == "GET":
            student_id = path.rsplit("/", 1)[1]
            if student_id in self.failing:
                return httpx.Response(500, json={"message": "boom"})
            return httpx.Response(200, json=list(self.scores.get(student_id, [])))
        if path == "/performance" and method == "POST":
            record = {
                "_id": self._new_id("perf"),
                "studentId": body["studentId"],
                "subject": body["subject"],
                "marks": body["marks"],
            }
            self.scores.setdefault(body["studentId"], []).insert(0, record)
            return httpx.Response(201, json=record)
        return httpx.Response(404, json={"message": "Not found"})


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def app_module(monkeypatch, backend, tmp_path):
    monkeypatch.setenv("SECRET_KEY", "x" * 40)
    monkeypatch.setenv("API_BASE_URL", BASE_URL)
    monkeypatch.setenv("LOG_FILE", str(tmp_path / "app.log"))
    monkeypatch.delenv("ALLOW_INSECURE_DEFAULTS", raising=False)

    import student_tracker

    mod = importlib.reload(student_tracker)
    mod.app.config["TESTING"] = True
    mod.app.config["WTF_CSRF_ENABLED"] = False
    mod.app.config["API_TRANSPORT"] = httpx.MockTransport(backend)
    return mod


@pytest.fixture
def client(app_module):
    return app_module.app.test_client()
