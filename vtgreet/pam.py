"""
PAM authentication via ctypes.

Authenticator drives one pam_handle_t through
authenticate -> acct_mgmt -> setcred(ESTABLISH) -> open_session.

The conversation callback hands PAM an array of pam_response allocated
with libc calloc/strdup. PAM owns and frees that array once the callback
returns PAM_SUCCESS; on any failure the callback frees everything it
allocated itself and returns an error code.
"""

import ctypes
import ctypes.util
import logging

from vtgreet.errors import (
    AccountInvalid,
    AuthError,
    AuthRejected,
    ConversationError,
    PartialCredentialFailure,
)

log = logging.getLogger("vtgreet.pam")

DEFAULT_SERVICE = "system-auth"

# Return codes (Linux-PAM)
PAM_SUCCESS = 0
PAM_BUF_ERR = 5
PAM_AUTH_ERR = 7
PAM_CONV_ERR = 19

# Message styles
PAM_PROMPT_ECHO_OFF = 1
PAM_PROMPT_ECHO_ON = 2
PAM_ERROR_MSG = 3
PAM_TEXT_INFO = 4

# pam_setcred flags
PAM_ESTABLISH_CRED = 0x0002
PAM_DELETE_CRED = 0x0004


class PamMessage(ctypes.Structure):
    _fields_ = [("msg_style", ctypes.c_int), ("msg", ctypes.c_char_p)]


class PamResponse(ctypes.Structure):
    # resp stays a raw pointer: it is malloc'd memory that PAM will free
    _fields_ = [("resp", ctypes.c_void_p), ("resp_retcode", ctypes.c_int)]


CONV_FUNC = ctypes.CFUNCTYPE(
    ctypes.c_int,
    ctypes.c_int,
    ctypes.POINTER(ctypes.POINTER(PamMessage)),
    ctypes.POINTER(ctypes.POINTER(PamResponse)),
    ctypes.c_void_p,
)


class PamConv(ctypes.Structure):
    _fields_ = [("conv", CONV_FUNC), ("appdata_ptr", ctypes.c_void_p)]


# ---------------------------------------------------------------------------
# Library loading
# ---------------------------------------------------------------------------

_libpam = None
_libc = None


def _find(name: str) -> ctypes.CDLL:
    path = ctypes.util.find_library(name)
    if path is None:
        raise OSError(f"lib{name} not found")
    return ctypes.CDLL(path)


def load_libc() -> ctypes.CDLL:
    global _libc
    if _libc is None:
        libc = _find("c")
        libc.calloc.restype = ctypes.c_void_p
        libc.calloc.argtypes = [ctypes.c_size_t, ctypes.c_size_t]
        libc.strdup.restype = ctypes.c_void_p
        libc.strdup.argtypes = [ctypes.c_void_p]
        libc.free.restype = None
        libc.free.argtypes = [ctypes.c_void_p]
        _libc = libc
    return _libc


def load_libpam() -> ctypes.CDLL:
    global _libpam
    if _libpam is None:
        libpam = _find("pam")
        libpam.pam_start.restype = ctypes.c_int
        libpam.pam_start.argtypes = [
            ctypes.c_char_p, ctypes.c_char_p,
            ctypes.POINTER(PamConv), ctypes.POINTER(ctypes.c_void_p),
        ]
        for name in ("pam_authenticate", "pam_acct_mgmt", "pam_setcred",
                     "pam_open_session", "pam_close_session", "pam_end"):
            fn = getattr(libpam, name)
            fn.restype = ctypes.c_int
            fn.argtypes = [ctypes.c_void_p, ctypes.c_int]
        libpam.pam_strerror.restype = ctypes.c_char_p
        libpam.pam_strerror.argtypes = [ctypes.c_void_p, ctypes.c_int]
        libpam.pam_getenvlist.restype = ctypes.POINTER(ctypes.c_void_p)
        libpam.pam_getenvlist.argtypes = [ctypes.c_void_p]
        _libpam = libpam
    return _libpam


# ---------------------------------------------------------------------------
# Credentials and conversation
# ---------------------------------------------------------------------------

class Credentials:
    """Username and password held in C buffers so they can be zeroed."""

    def __init__(self):
        self.username_buffer = ctypes.create_string_buffer(1)
        self.password_buffer = ctypes.create_string_buffer(1)

    @staticmethod
    def _encode(value: str) -> ctypes.Array:
        data = value.encode()
        if b"\0" in data:
            raise ValueError("credentials may not contain NUL")
        return ctypes.create_string_buffer(data)

    def set_username(self, username: str) -> None:
        _zero(self.username_buffer)
        self.username_buffer = self._encode(username)

    def set_password(self, password: str) -> None:
        _zero(self.password_buffer)
        self.password_buffer = self._encode(password)

    @property
    def username(self) -> str:
        return self.username_buffer.value.decode(errors="replace")

    def wipe(self) -> None:
        _zero(self.username_buffer)
        _zero(self.password_buffer)


def _zero(buffer: ctypes.Array) -> None:
    ctypes.memset(buffer, 0, ctypes.sizeof(buffer))


class ConversationResponder:
    """The pam_conv callback body.

    Echoed prompts get the username, masked prompts the password.
    Info messages are logged. An error message aborts the exchange.
    """

    def __init__(self, credentials: Credentials, libc):
        self._credentials = credentials
        self._libc = libc
        self.aborted = False

    def __call__(self, num_msg, messages, responses, _appdata) -> int:
        try:
            return self._respond(num_msg, messages, responses)
        except Exception:
            # Must not propagate into C: ctypes would report success.
            log.exception("PAM conversation callback failed")
            self.aborted = True
            return PAM_CONV_ERR

    def _respond(self, num_msg: int, messages, responses) -> int:
        if num_msg <= 0:
            self.aborted = True
            return PAM_CONV_ERR

        block = self._libc.calloc(num_msg, ctypes.sizeof(PamResponse))
        if not block:
            self.aborted = True
            return PAM_BUF_ERR
        replies = ctypes.cast(block, ctypes.POINTER(PamResponse))

        result = PAM_CONV_ERR
        try:
            result = self._fill(num_msg, messages, replies)
        finally:
            if result != PAM_SUCCESS:
                self._release(replies, num_msg)
                self._libc.free(block)
                self.aborted = True
        if result != PAM_SUCCESS:
            return result

        # Ownership of block and every resp string passes to PAM here.
        responses[0] = replies
        return PAM_SUCCESS

    def _fill(self, num_msg: int, messages, replies) -> int:
        for i in range(num_msg):
            message = messages[i].contents
            style = message.msg_style
            text = (message.msg or b"").decode(errors="replace")

            if style == PAM_PROMPT_ECHO_ON:
                source = self._credentials.username_buffer
            elif style == PAM_PROMPT_ECHO_OFF:
                source = self._credentials.password_buffer
            elif style == PAM_TEXT_INFO:
                log.info(f"PAM: {text}")
                continue
            elif style == PAM_ERROR_MSG:
                log.error(f"PAM: {text}")
                return PAM_CONV_ERR
            else:
                log.error(f"PAM sent unknown message style {style}")
                return PAM_CONV_ERR

            copy = self._libc.strdup(ctypes.addressof(source))
            if not copy:
                return PAM_BUF_ERR
            replies[i].resp = copy
            replies[i].resp_retcode = 0
        return PAM_SUCCESS

    def _release(self, replies, num_msg: int) -> None:
        for i in range(num_msg):
            if replies[i].resp:
                self._libc.free(replies[i].resp)
                replies[i].resp = None


# ---------------------------------------------------------------------------
# Authenticator
# ---------------------------------------------------------------------------

class Authenticator:
    """One PAM handle and the credentials it converses with.

    The pam_conv structure, the ctypes callback and the credential buffers
    are attributes of this object, so they stay alive and in place for as
    long as the handle does. Nothing outside this class sees the pointers.
    """

    def __init__(self, service: str = DEFAULT_SERVICE, lib=None, libc=None):
        self.service = service
        self._lib = lib if lib is not None else load_libpam()
        self._libc = libc if libc is not None else load_libc()
        self._credentials = Credentials()
        self._responder = ConversationResponder(self._credentials, self._libc)
        self._callback = CONV_FUNC(self._responder)
        self._conv = PamConv(self._callback, None)
        self._handle = ctypes.c_void_p()
        self._started = False
        self._ended = False
        self.session_open = False

    @classmethod
    def create(cls, service: str = DEFAULT_SERVICE, lib=None, libc=None) -> "Authenticator":
        authenticator = cls(service, lib=lib, libc=libc)
        authenticator._start()
        return authenticator

    def _start(self) -> None:
        rc = self._lib.pam_start(
            self.service.encode(), None,
            ctypes.byref(self._conv), ctypes.byref(self._handle),
        )
        if rc != PAM_SUCCESS:
            self._ended = True
            raise AuthError(f"pam_start({self.service}) failed with code {rc}", rc)
        self._started = True

    def set_username(self, username: str) -> "Authenticator":
        self._credentials.set_username(username)
        return self

    def set_password(self, password: str) -> "Authenticator":
        self._credentials.set_password(password)
        return self

    @property
    def active(self) -> bool:
        return self._started and not self._ended

    def authenticate_and_open_session(self) -> None:
        """Run the four PAM steps in order. Raises an AuthError subclass on failure."""
        self._require_active()
        username = self._credentials.username
        self._responder.aborted = False
        h = self._handle
        try:
            self._step("pam_authenticate", self._lib.pam_authenticate(h, 0), AuthRejected)
            self._step("pam_acct_mgmt", self._lib.pam_acct_mgmt(h, 0), AccountInvalid)
            self._step("pam_setcred", self._lib.pam_setcred(h, PAM_ESTABLISH_CRED), AuthRejected)

            rc = self._lib.pam_open_session(h, 0)
            if rc != PAM_SUCCESS:
                reason = self._reason(rc)
                rollback = self._lib.pam_setcred(h, PAM_DELETE_CRED)
                if rollback != PAM_SUCCESS:
                    log.error(f"Credential rollback failed: {self._reason(rollback)}")
                raise PartialCredentialFailure(
                    f"pam_open_session: {reason}", rc, rollback_code=rollback,
                )
        except AuthError as e:
            self.end(e.code if e.code is not None else PAM_AUTH_ERR)
            raise
        finally:
            self._credentials.wipe()

        self.session_open = True
        log.info(f"PAM session opened for {username}")

    def _step(self, name: str, rc: int, error: type[AuthError]) -> None:
        if rc == PAM_SUCCESS:
            return
        reason = self._reason(rc)
        if rc == PAM_CONV_ERR or self._responder.aborted:
            raise ConversationError(f"{name}: conversation aborted ({reason})", rc)
        raise error(f"{name}: {reason}", rc)

    def _reason(self, rc: int) -> str:
        text = self._lib.pam_strerror(self._handle, rc)
        return text.decode(errors="replace") if text else f"PAM error {rc}"

    def environment(self) -> dict[str, str]:
        """Variables PAM modules exported for the session (pam_getenvlist)."""
        self._require_active()
        envlist = self._lib.pam_getenvlist(self._handle)
        env: dict[str, str] = {}
        if not envlist:
            return env
        i = 0
        while envlist[i]:
            entry = ctypes.string_at(envlist[i]).decode(errors="replace")
            self._libc.free(envlist[i])
            key, sep, value = entry.partition("=")
            if sep:
                env[key] = value
            i += 1
        self._libc.free(ctypes.cast(envlist, ctypes.c_void_p))
        return env

    def close_session(self) -> None:
        """Close the PAM session, drop credentials and end the handle."""
        if self.session_open and self.active:
            rc = self._lib.pam_close_session(self._handle, 0)
            if rc != PAM_SUCCESS:
                log.warning(f"pam_close_session: {self._reason(rc)}")
            rc = self._lib.pam_setcred(self._handle, PAM_DELETE_CRED)
            if rc != PAM_SUCCESS:
                log.warning(f"pam_setcred(DELETE_CRED): {self._reason(rc)}")
        self.session_open = False
        self.end()

    def end(self, status: int = PAM_SUCCESS) -> None:
        if not self.active:
            self._ended = True
            return
        self._ended = True
        rc = self._lib.pam_end(self._handle, status)
        if rc != PAM_SUCCESS:
            log.warning(f"pam_end returned {rc}")

    def _require_active(self) -> None:
        if not self.active:
            raise AuthError("PAM handle is not active")
