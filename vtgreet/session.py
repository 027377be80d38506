"""
Session environment and session process launch.

After a successful login the user's login shell is started on the
supervised X server with a freshly built environment. The SessionProcess
keeps the PAM handle so the PAM session can be closed once the shell exits.
"""

import logging
import os
import pwd
import subprocess
from dataclasses import dataclass

from vtgreet.config import GreeterConfig
from vtgreet.display import display_server_ready
from vtgreet.errors import AccountLookupFailure, ChildSpawnFailure
from vtgreet.pam import Authenticator

log = logging.getLogger("vtgreet.session")


@dataclass(frozen=True)
class Account:
    name: str
    uid: int
    gid: int
    home: str
    shell: str


def lookup_account(username: str) -> Account:
    try:
        pw = pwd.getpwnam(username)
    except KeyError:
        raise AccountLookupFailure(username) from None
    return Account(
        name=pw.pw_name,
        uid=pw.pw_uid,
        gid=pw.pw_gid,
        home=pw.pw_dir,
        shell=pw.pw_shell or "/bin/sh",
    )


def build_session_environment(
    account: Account,
    config: GreeterConfig,
    pam_env: dict[str, str] | None = None,
) -> dict[str, str]:
    """Environment for the session shell. PAM variables never override these."""
    env = {
        "HOME": account.home,
        "PWD": account.home,
        "SHELL": account.shell,
        "USER": account.name,
        "LOGNAME": account.name,
        "PATH": config.search_path,
        "MAIL": os.path.join(config.mail_spool, account.name),
        "XAUTHORITY": os.path.join(account.home, ".Xauthority"),
        "DISPLAY": config.display,
    }
    for key, value in (pam_env or {}).items():
        env.setdefault(key, value)
    return env


def session_command(account: Account, config: GreeterConfig) -> list[str]:
    return [account.shell, "-l", "-c", f'. "$HOME/{config.session_script}"']


def launch_session(account: Account, env: dict[str, str], config: GreeterConfig) -> subprocess.Popen:
    if not display_server_ready():
        raise ChildSpawnFailure("Refusing to start a session: X server is not reachable")

    argv = session_command(account, config)
    kwargs = {}
    if os.geteuid() == 0 and account.uid != 0:
        kwargs = {
            "user": account.uid,
            "group": account.gid,
            "extra_groups": os.getgrouplist(account.name, account.gid),
        }
    try:
        process = subprocess.Popen(
            argv,
            env=env,
            cwd=account.home,
            start_new_session=True,
            stdin=subprocess.DEVNULL,
            **kwargs,
        )
    except OSError as e:
        raise ChildSpawnFailure(f"Could not start session for {account.name}: {e}") from e
    log.info(f"Started session for {account.name}: pid {process.pid}")
    return process


class SessionProcess:
    """A running session shell and the PAM handle its session belongs to."""

    def __init__(self, process: subprocess.Popen, authenticator: Authenticator | None):
        self.process = process
        self.authenticator = authenticator

    def wait(self) -> int:
        code = self.process.wait()
        log.info(f"Session pid {self.process.pid} exited with {code}")
        if self.authenticator is not None:
            self.authenticator.close_session()
        return code


def start_user_session(config: GreeterConfig, username: str,
                       authenticator: Authenticator | None) -> SessionProcess:
    account = lookup_account(username)
    pam_env = authenticator.environment() if authenticator is not None else {}
    env = build_session_environment(account, config, pam_env)
    process = launch_session(account, env, config)
    return SessionProcess(process, authenticator)
