"""Command line interface for SnapTo."""

import getpass
import logging
import sys
from pathlib import Path
from typing import Optional

import click

from . import __version__
from .clipboard import ClipboardSource, ClipboardWatcher, clipboard_text_for, notify
from .config import Config, config_path, load_config
from .dispatch import Dispatcher, UploadOutcome, resolve_destinations
from .errors import ConfigError, DestinationDisabledError, DestinationNotFoundError, SnaptoError, StoreError
from .history import HistoryStore, record_upload
from .naming import TemplateParser
from .recovery import AuthRecovery
from .vault import CredentialVault

logger = logging.getLogger(__name__)


def format_size(size: float) -> str:
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


def format_duration(ms: int) -> str:
    if ms < 1000:
        return f"{ms}ms"
    return f"{ms / 1000:.2f}s"


class AppContext:
    def __init__(self, config_file: Optional[Path]):
        self.config_file = config_file
        self._config: Optional[Config] = None

    @property
    def config(self) -> Config:
        if self._config is None:
            self._config = load_config(self.config_file)
        return self._config

    def vault(self) -> CredentialVault:
        return CredentialVault.from_settings(self.config.security)

    def history(self) -> Optional[HistoryStore]:
        """History store for uploads, or None when disabled or unavailable."""
        if not self.config.history.enabled:
            return None
        try:
            return HistoryStore(self.config.history)
        except StoreError as e:
            logger.warning("History unavailable, uploads will not be recorded: %s", e)
            click.secho(f"History unavailable: {e}", fg="yellow", err=True)
            return None


pass_app = click.make_pass_decorator(AppContext)


def _fail(error: Exception):
    raise click.ClickException(str(error))


@click.group()
@click.version_option(__version__, prog_name="snapto")
@click.option("--config", "config_file", type=click.Path(dir_okay=False, path_type=Path),
              help="Configuration file (default: ~/.snapto/config.yaml).")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx, config_file, verbose):
    """Upload clipboard screenshots to SFTP/SSH servers or local folders."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = AppContext(config_file)


def _report(outcome: UploadOutcome):
    for item in outcome.results:
        if item.skipped:
            click.secho(f"- {item.name} skipped (disabled)", fg="yellow")
        elif item.ok:
            click.secho(f"✓ {item.name} → {item.result.location}", fg="green")
        else:
            click.secho(f"✗ {item.name} failed: {item.error}", fg="red")
    click.echo(f"Size:     {format_size(outcome.size)}")
    click.echo(f"Duration: {format_duration(outcome.elapsed_ms)}")
    click.echo(f"Speed:    {format_size(outcome.throughput)}/s")


def _after_upload(config: Config, clipboard: ClipboardSource, outcome: UploadOutcome, filename: str):
    if config.general.copy_url_to_clipboard:
        text = clipboard_text_for(outcome.primary_result, config.general.clipboard_copy_mode)
        if text is None:
            click.secho("No URL available, skipping clipboard copy", fg="yellow")
        else:
            try:
                clipboard.set_text(text)
                click.echo(f"Copied: {text}")
            except SnaptoError as e:
                logger.warning("%s", e)
    if config.general.show_notifications:
        notify("Screenshot Uploaded", f"{filename} → {outcome.primary_destination}")


@cli.command()
@click.option("--to", "destination", help="Upload only to this destination.")
@click.option("--filename", help="Use this filename instead of the naming template.")
@pass_app
def upload(app: AppContext, destination, filename):
    """Upload the image currently on the clipboard."""
    clipboard = ClipboardSource()
    try:
        config = app.config
        payload = clipboard.get_image()
        click.echo(f"Found image in clipboard ({format_size(len(payload))})")

        if not filename:
            parser = TemplateParser(config.naming.date_format, config.naming.time_format)
            filename = parser.generate(config.naming.template, config.naming.default_extension)
        click.echo(f"Filename: {filename}")
        click.echo(f"Destinations: {', '.join(resolve_destinations(config, destination))}")

        store = app.history()
        try:
            dispatcher = Dispatcher(config, vault=app.vault(), history=store)
            outcome = dispatcher.dispatch(payload, filename, primary=destination)
        finally:
            if store is not None:
                store.close()
    except SnaptoError as e:
        _fail(e)

    _report(outcome)
    _after_upload(config, clipboard, outcome, filename)


@cli.command()
@click.option("--interval", type=int, help="Polling interval in milliseconds.")
@click.option("--to", "destination", help="Upload only to this destination.")
@pass_app
def watch(app: AppContext, interval, destination):
    """Upload every new image that appears on the clipboard."""
    try:
        config = app.config
        names = resolve_destinations(config, destination)
        for name in names:
            if config.get_destination(name) is None:
                raise DestinationNotFoundError(name)
        store = app.history()
        dispatcher = Dispatcher(config, vault=app.vault(), history=store)
    except SnaptoError as e:
        _fail(e)

    interval_ms = interval or config.general.watch_interval_ms
    clipboard = ClipboardSource()
    watcher = ClipboardWatcher(clipboard, interval=interval_ms / 1000)
    parser = TemplateParser(config.naming.date_format, config.naming.time_format)

    click.echo(f"Watching clipboard every {interval_ms}ms, uploading to {', '.join(names)}")
    click.echo("Press Ctrl+C to stop")
    channel = watcher.start()
    uploads = 0
    try:
        while True:
            payload = channel.get(timeout=0.5)
            if payload is None:
                continue
            click.echo(f"\nNew image detected ({format_size(len(payload))})")
            try:
                filename = parser.generate(config.naming.template, config.naming.default_extension)
                outcome = dispatcher.dispatch(payload, filename, primary=destination)
            except SnaptoError as e:
                click.secho(f"✗ Upload failed: {e}", fg="red")
                if config.general.show_notifications:
                    notify("Upload Failed", str(e))
                continue
            uploads += 1
            _report(outcome)
            _after_upload(config, clipboard, outcome, filename)
    except KeyboardInterrupt:
        pass
    finally:
        channel.close()
        watcher.join(timeout=2)
        if store is not None:
            store.close()
    click.echo(f"\nStopped after {uploads} upload{'s' if uploads != 1 else ''}")


@cli.group()
def history():
    """Browse and manage upload history."""


def _print_entries(entries):
    if not entries:
        click.echo("No history entries")
        return
    for entry in entries:
        when = entry.created_at.astimezone().strftime("%Y-%m-%d %H:%M:%S")
        click.echo(f"{entry.id:>5}  {when}  {entry.destination:<12} {format_size(entry.size):>9}  "
                   f"{entry.url or entry.remote_path}")


def _open_history(app: AppContext) -> HistoryStore:
    return HistoryStore(app.config.history)


@history.command("list")
@click.option("-n", "--limit", default=20, show_default=True, help="Number of entries to show.")
@pass_app
def history_list(app: AppContext, limit):
    """Show the most recent uploads."""
    try:
        with _open_history(app) as store:
            _print_entries(store.get_recent(limit))
    except SnaptoError as e:
        _fail(e)


@history.command("search")
@click.argument("query")
@pass_app
def history_search(app: AppContext, query):
    """Find uploads whose filename or URL contains QUERY."""
    try:
        with _open_history(app) as store:
            _print_entries(store.search(query))
    except SnaptoError as e:
        _fail(e)


@history.command("delete")
@click.argument("entry_id", type=int)
@pass_app
def history_delete(app: AppContext, entry_id):
    """Delete one history entry and its stored files."""
    try:
        with _open_history(app) as store:
            if not store.delete(entry_id):
                raise click.ClickException(f"No history entry with id {entry_id}")
    except SnaptoError as e:
        _fail(e)
    click.echo(f"Deleted entry {entry_id}")


@history.command("clear")
@click.confirmation_option(prompt="Delete all history entries?")
@pass_app
def history_clear(app: AppContext):
    """Delete every history entry."""
    try:
        with _open_history(app) as store:
            removed = store.clear_all()
    except SnaptoError as e:
        _fail(e)
    click.echo(f"Deleted {removed} entries")


@history.command("prune")
@pass_app
def history_prune(app: AppContext):
    """Remove entries past the retention period and over the size limit."""
    try:
        with _open_history(app) as store:
            removed = store.purge_expired() + store.cleanup()
    except SnaptoError as e:
        _fail(e)
    click.echo(f"Removed {removed} entries")


@history.command("resend")
@click.argument("entry_id", type=int)
@click.option("--to", "destination", required=True, help="Destination to send the copy to.")
@pass_app
def history_resend(app: AppContext, entry_id, destination):
    """Upload a stored copy again, prompting for a password if needed."""
    try:
        config = app.config
        dest = config.get_destination(destination)
        if dest is None:
            raise DestinationNotFoundError(destination)
        if not dest.enabled:
            raise DestinationDisabledError(destination)

        with _open_history(app) as store:
            entry = store.get_by_id(entry_id)
            if entry is None:
                raise click.ClickException(f"No history entry with id {entry_id}")
            if not entry.local_copy_path or not Path(entry.local_copy_path).exists():
                raise ConfigError(f"Entry {entry_id} has no stored copy (history mode must be 'full')")
            payload = Path(entry.local_copy_path).read_bytes()

            recovery = AuthRecovery(app.vault())
            result = recovery.resend(dest, payload, entry.filename, prompt=_prompt_password)
            try:
                record_upload(store, destination, entry.filename, result)
            except SnaptoError as e:
                logger.warning("Failed to save to history: %s", e)
    except SnaptoError as e:
        _fail(e)

    click.secho(f"✓ Re-uploaded to {destination}: {result.location}", fg="green")
    try:
        ClipboardSource().set_text(result.location)
    except SnaptoError as e:
        logger.warning("%s", e)


def _prompt_password(message: str) -> Optional[str]:
    try:
        password = getpass.getpass(message)
    except (EOFError, KeyboardInterrupt):
        return None
    return password or None


@cli.group()
def credentials():
    """Manage stored destination passwords."""


@credentials.command("set")
@click.argument("key")
@click.password_option("--value", prompt="Secret", help="Secret value (prompted when omitted).")
@pass_app
def credentials_set(app: AppContext, key, value):
    """Store a secret under KEY (e.g. sftp_password_my-server)."""
    try:
        app.vault().set(key, value)
    except SnaptoError as e:
        _fail(e)
    click.echo(f"Stored {key}")


@credentials.command("list")
@pass_app
def credentials_list(app: AppContext):
    """List stored credential keys."""
    try:
        keys = app.vault().list_keys()
    except SnaptoError as e:
        _fail(e)
    if not keys:
        click.echo("No stored credentials")
    for key in keys:
        click.echo(key)


@credentials.command("delete")
@click.argument("key")
@pass_app
def credentials_delete(app: AppContext, key):
    """Remove the secret stored under KEY."""
    try:
        app.vault().delete(key)
    except SnaptoError as e:
        _fail(e)
    click.echo(f"Deleted {key}")


@credentials.command("clear")
@click.confirmation_option(prompt="Delete all stored credentials?")
@pass_app
def credentials_clear(app: AppContext):
    """Remove every stored secret."""
    try:
        app.vault().clear_all()
    except SnaptoError as e:
        _fail(e)
    click.echo("Cleared all credentials")


@cli.group("config")
def config_group():
    """Inspect the configuration."""


@config_group.command("path")
@pass_app
def config_show_path(app: AppContext):
    """Print the configuration file location."""
    click.echo(str(config_path(app.config_file)))


@config_group.command("show")
@pass_app
def config_show(app: AppContext):
    """Print the destinations and their state."""
    try:
        config = app.config
    except SnaptoError as e:
        _fail(e)
    click.echo(f"Default uploader: {config.general.default_uploader}")
    if config.general.additional_uploaders:
        click.echo(f"Additional:       {', '.join(config.general.additional_uploaders)}")
    click.echo(f"History:          {config.history.mode if config.history.enabled else 'disabled'}")
    for name, dest in config.uploads.items():
        state = "enabled" if dest.enabled else "disabled"
        target = dest.local_path if dest.type == "local" else f"{dest.username}@{dest.host}:{dest.remote_path}"
        click.echo(f"  {name:<16} {dest.type:<6} {state:<9} {target}")


@config_group.command("validate")
@pass_app
def config_validate(app: AppContext):
    """Check the configuration for problems."""
    try:
        app.config.validate()
    except SnaptoError as e:
        _fail(e)
    click.secho("Configuration is valid", fg="green")


def main():
    """Main entry point."""
    try:
        cli(standalone_mode=True)
    except SnaptoError as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(1)
