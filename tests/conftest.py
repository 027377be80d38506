from __future__ import annotations

import ctypes

import pytest

from vtgreet.config import GreeterConfig
from vtgreet.pam import (
    PAM_SUCCESS,
    PamMessage,
    PamResponse,
    load_libc,
)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 0.0) -> None:
        self.now = now
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class TrackingLibc:
    """Real libc allocation, recording every pointer handed out and freed."""

    def __init__(self) -> None:
        self._libc = load_libc()
        self.allocated: list[int] = []
        self.freed: list[int] = []
        self.fail_calloc = False

    def calloc(self, count: int, size: int):
        if self.fail_calloc:
            return None
        ptr = self._libc.calloc(count, size)
        self.allocated.append(ptr)
        return ptr

    def strdup(self, src):
        ptr = self._libc.strdup(src)
        self.allocated.append(ptr)
        return ptr

    def free(self, ptr) -> None:
        address = ptr.value if isinstance(ptr, ctypes.c_void_p) else ptr
        self.freed.append(address)
        self._libc.free(address)

    @property
    def outstanding(self) -> set[int]:
        return set(self.allocated) - set(self.freed)


class FakePam:
    """Stands in for libpam; drives the real conversation callback.

    `prompts` is the list of (style, text) messages sent to the
    conversation during pam_authenticate. Replies are read back and freed
    the way libpam does.
    """

    def __init__(self, libc: TrackingLibc, prompts=None, results=None, env=None) -> None:
        self.libc = libc
        self.prompts = prompts or []
        self.results = results or {}
        self.env = env
        self.calls: list[tuple] = []
        self.conv = None
        self.conv_result: int | None = None
        self.replies: list[bytes | None] = []

    def _rc(self, name: str) -> int:
        return self.results.get(name, PAM_SUCCESS)

    def pam_start(self, service, user, conv_ref, handle_ref) -> int:
        self.calls.append(("pam_start", service, user))
        self.conv = conv_ref._obj
        handle_ref._obj.value = 0x1234
        return self._rc("pam_start")

    def converse(self, prompts) -> int:
        n = len(prompts)
        messages = (PamMessage * n)(*[PamMessage(style, text) for style, text in prompts])
        pointers = (ctypes.POINTER(PamMessage) * n)(*[ctypes.pointer(m) for m in messages])
        out = ctypes.POINTER(PamResponse)()
        rc = self.conv.conv(n, pointers, ctypes.byref(out), None)
        self.conv_result = rc
        if rc == PAM_SUCCESS:
            for i in range(n):
                resp = out[i].resp
                self.replies.append(ctypes.string_at(resp) if resp else None)
                if resp:
                    self.libc.free(resp)
            self.libc.free(ctypes.cast(out, ctypes.c_void_p))
        return rc

    def pam_authenticate(self, handle, flags) -> int:
        self.calls.append(("pam_authenticate", flags))
        if self.prompts:
            self.converse(self.prompts)
        return self._rc("pam_authenticate")

    def pam_acct_mgmt(self, handle, flags) -> int:
        self.calls.append(("pam_acct_mgmt", flags))
        return self._rc("pam_acct_mgmt")

    def pam_setcred(self, handle, flags) -> int:
        self.calls.append(("pam_setcred", flags))
        return self.results.get(("pam_setcred", flags), PAM_SUCCESS)

    def pam_open_session(self, handle, flags) -> int:
        self.calls.append(("pam_open_session", flags))
        return self._rc("pam_open_session")

    def pam_close_session(self, handle, flags) -> int:
        self.calls.append(("pam_close_session", flags))
        return self._rc("pam_close_session")

    def pam_end(self, handle, status) -> int:
        self.calls.append(("pam_end", status))
        return PAM_SUCCESS

    def pam_strerror(self, handle, rc) -> bytes:
        return f"fake error {rc}".encode()

    def pam_getenvlist(self, handle):
        if self.env is None:
            return None
        array = self.libc.calloc(len(self.env) + 1, ctypes.sizeof(ctypes.c_void_p))
        entries = ctypes.cast(array, ctypes.POINTER(ctypes.c_void_p))
        for i, entry in enumerate(self.env):
            buf = ctypes.create_string_buffer(entry.encode())
            entries[i] = self.libc.strdup(ctypes.addressof(buf))
        return entries

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> GreeterConfig:
    return GreeterConfig(username="alice", session_start_delay=0.0)


@pytest.fixture
def libc() -> TrackingLibc:
    return TrackingLibc()
