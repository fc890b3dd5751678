"""Confirmation gate for runs against production-like environments."""

import logging
from typing import Callable, Iterable, Optional

import click

logger = logging.getLogger(__name__)

ConfirmFn = Callable[[str], bool]


def _default_confirm(warning: str) -> bool:
    """Show a warning banner and ask the user to confirm on the terminal."""
    line = "*" * (len(warning) + 4)
    click.secho(line, fg="yellow")
    click.secho(f"* {warning} *", fg="yellow")
    click.secho(line, fg="yellow")
    click.echo()
    try:
        return click.confirm("Are you sure you want to run this command?", default=False)
    except click.Abort:
        return False


class EnvironmentGuard:
    """Decides whether a run may write without asking first.

    Usage:
        guard = EnvironmentGuard("production", ["production", "staging"])
        if not guard.confirm_to_proceed('Environment "production" restricted.'):
            return  # declined, nothing written
    """

    def __init__(
        self,
        environment: str,
        restricted_env: Iterable[str],
        connection: Optional[str] = None,
        allowed_db_connections: Iterable[str] = (),
        use_allowed_db_connections: bool = True,
        confirm_fn: Optional[ConfirmFn] = None,
    ):
        self.environment = environment
        self.restricted_env = set(restricted_env)
        self.connection = connection
        self.allowed_db_connections = set(allowed_db_connections)
        self.use_allowed_db_connections = use_allowed_db_connections
        self.confirm_fn = confirm_fn or _default_confirm

    @classmethod
    def from_settings(cls, settings, confirm_fn: Optional[ConfirmFn] = None) -> "EnvironmentGuard":
        return cls(
            environment=settings.environment,
            restricted_env=settings.restricted_env,
            connection=settings.connection,
            allowed_db_connections=settings.allowed_db_connections,
            use_allowed_db_connections=settings.use_allowed_db_connections,
            confirm_fn=confirm_fn,
        )

    def is_connection_allowed(self) -> bool:
        """Check whether the connection is on the exemption list (when enabled)."""
        return (
            self.use_allowed_db_connections
            and self.connection is not None
            and self.connection in self.allowed_db_connections
        )

    def is_restricted(self) -> bool:
        """Check if the current environment requires confirmation."""
        if self.environment not in self.restricted_env:
            return False
        return not self.is_connection_allowed()

    def confirm_to_proceed(
        self,
        warning: Optional[str] = None,
        check: Optional[Callable[[], bool]] = None,
        force: bool = False,
    ) -> bool:
        """Return True if the run may go ahead.

        Args:
            warning: Banner text shown before the prompt
            check: Restriction predicate, defaults to is_restricted
            force: Skip the prompt even when restricted

        Returns:
            False only when restricted, not forced, and the user declined.
        """
        check = check or self.is_restricted
        if not check():
            return True
        if force:
            logger.warning("Environment %r is restricted; proceeding because of --force", self.environment)
            return True

        warning = warning or f'Environment "{self.environment}" restricted.'
        if self.confirm_fn(warning):
            return True

        logger.warning("Anonymization declined in restricted environment %r", self.environment)
        return False
