#!/usr/bin/env python3
"""
redis-edit: edit a single Redis key in your favorite EDITOR

Fetches a key, opens a textual representation of it in an editor and, when
changes were made, writes them back to the same key. Complex data types are
converted to a JSON representation which is converted back when written.
Supported types: string, list, set, hash, zset.
"""

import argparse
import enum
import json
import math
import os
import shlex
import shutil
import subprocess
import sys
import tempfile
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import redis

try:
    import tomllib
except ImportError:
    import tomli as tomllib

import tomli_w

__version__ = "0.1.0"


# ============================================================================
# Errors
# ============================================================================


class RedisEditError(RuntimeError):
    """Base class for every failure that aborts an edit session."""


class UnsupportedKind(RedisEditError):
    """The key holds a Redis type that cannot be edited."""


class StoreReadError(RedisEditError):
    """Reading the key from Redis failed."""


class StoreWriteError(RedisEditError):
    """Writing the edited value back to Redis failed."""


class MalformedEdit(RedisEditError):
    """The edited text does not parse as the key's type."""


class EditorAborted(RedisEditError):
    """The editor could not be started or exited with a non-zero status."""


class EditorNotFound(RedisEditError):
    """No usable editor was configured or found on PATH."""


class ScratchFileError(RedisEditError):
    """The temporary file holding the edit could not be used."""


class ConfigError(ValueError):
    """The user configuration file is unreadable or invalid."""


# ============================================================================
# Value Kinds
# ============================================================================


class ValueKind(enum.Enum):
    """The Redis value types redis-edit knows how to edit."""

    STRING = "string"
    LIST = "list"
    SET = "set"
    HASH = "hash"
    ZSET = "zset"

    @classmethod
    def from_store(cls, type_name) -> "ValueKind":
        """
        Map the reply of the Redis TYPE command to a ValueKind.

        A missing key ("none") is edited as a string, since that is what a
        plain write will create.

        Raises:
            UnsupportedKind: For streams, module types and anything else
        """
        if isinstance(type_name, bytes):
            type_name = type_name.decode("utf-8", "replace")
        if not type_name or type_name == "none":
            return cls.STRING
        try:
            return cls(type_name)
        except ValueError:
            supported = ", ".join(kind.value for kind in cls)
            raise UnsupportedKind(
                f"Redis type {type_name!r} not supported (supported: {supported})"
            ) from None


# ============================================================================
# Accessors
# ============================================================================


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", "surrogateescape")


def _encode(text: str) -> bytes:
    return text.encode("utf-8", "surrogateescape")


def _encode_edited(text: str, what: str) -> bytes:
    """Encode an edited string, rejecting lone surrogates that have no byte form."""
    try:
        return _encode(text)
    except UnicodeEncodeError as e:
        raise MalformedEdit(
            f"{what} contains an invalid character {text[e.start]!r}: {text!r}"
        ) from e


def _dump_json(value: Any) -> bytes:
    return _encode(json.dumps(value, indent=2, ensure_ascii=False) + "\n")


def _load_json(data: bytes) -> Any:
    """Parse edited JSON, reporting the location of any syntax error."""
    try:
        return json.loads(_decode(data))
    except json.JSONDecodeError as e:
        raise MalformedEdit(
            f"invalid JSON: {e.msg} (line {e.lineno}, column {e.colno})"
        ) from e
    except ValueError as e:
        # e.g. integers beyond the interpreter's digit limit
        raise MalformedEdit(f"invalid JSON: {e}") from e


@dataclass(frozen=True)
class Snapshot:
    """The state of a key as fetched, before any editing."""

    kind: ValueKind
    data: bytes
    structured: bool = False


class Accessor:
    """
    Fetch, validate and write strategy for one ValueKind.

    Accessors hold no per-session state: `validate` returns the value in the
    exact form Redis will receive and `write` takes it back as an argument,
    so only data that passed validation ever reaches Redis.
    """

    kind: ValueKind
    description = ""
    suffix = ".txt"

    def fetch(self, client: redis.Redis, key: str) -> Snapshot:
        raise NotImplementedError

    def validate(self, data: bytes, snapshot: Snapshot, raw: bool = False) -> Any:
        raise NotImplementedError

    def write(self, client: redis.Redis, key: str, value: Any) -> None:
        raise NotImplementedError


class StringAccessor(Accessor):
    """Plain strings are edited as-is, byte for byte."""

    kind = ValueKind.STRING

    @staticmethod
    def _holds_json(data: bytes) -> bool:
        try:
            value = json.loads(data)
        except ValueError:
            return False
        return isinstance(value, (dict, list))

    def fetch(self, client: redis.Redis, key: str) -> Snapshot:
        try:
            data = client.get(key)
        except redis.RedisError as e:
            raise StoreReadError(f"Unable to get key {key!r}: {e}") from e
        if data is None:
            data = b""
        return Snapshot(
            kind=self.kind,
            data=data,
            structured=bool(data) and self._holds_json(data),
        )

    def validate(self, data: bytes, snapshot: Snapshot, raw: bool = False) -> bytes:
        """
        Check an edited string.

        Strings that held a JSON object or array before editing must still be
        valid JSON afterwards. Anything else, or any string in raw mode, is
        written unchecked.
        """
        if snapshot.structured and not raw:
            _load_json(data)
        return data

    def write(self, client: redis.Redis, key: str, value: bytes) -> None:
        try:
            client.set(key, value)
        except redis.RedisError as e:
            raise StoreWriteError(f"Unable to write key {key!r}: {e}") from e


class JSONAccessor(Accessor):
    """
    Base for the composite types, which are edited as pretty-printed JSON.

    `validate` returns members already encoded to bytes (and zset scores as
    floats). Writes always replace the whole key: DEL followed by the
    commands that recreate it, sent as one MULTI/EXEC pipeline.
    """

    suffix = ".json"

    def __init__(self, type_label: str):
        self.description = (
            f"This is a JSON representation of the data type {type_label}. "
            "Edit, but don't change its type!"
        )

    def _read(self, client: redis.Redis, key: str) -> Any:
        raise NotImplementedError

    def _check(self, value: Any) -> Any:
        raise NotImplementedError

    def _recreate(self, pipe, key: str, value: Any) -> None:
        raise NotImplementedError

    def fetch(self, client: redis.Redis, key: str) -> Snapshot:
        try:
            value = self._read(client, key)
        except redis.RedisError as e:
            raise StoreReadError(f"Unable to get key {key!r}: {e}") from e
        return Snapshot(kind=self.kind, data=_dump_json(value))

    def validate(self, data: bytes, snapshot: Snapshot, raw: bool = False) -> Any:
        return self._check(_load_json(data))

    def write(self, client: redis.Redis, key: str, value: Any) -> None:
        try:
            with client.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                # Redis has no empty composites; an emptied value removes the key
                if value:
                    self._recreate(pipe, key, value)
                pipe.execute()
        except redis.RedisError as e:
            raise StoreWriteError(f"Unable to write key {key!r}: {e}") from e


def _check_string_array(value: Any, type_label: str) -> List[bytes]:
    if not isinstance(value, list):
        raise MalformedEdit(
            f"a {type_label} must be a JSON array, got {type(value).__name__}"
        )
    encoded = []
    for index, item in enumerate(value):
        if not isinstance(item, str):
            raise MalformedEdit(
                f"{type_label} element {index} must be a string, "
                f"got {type(item).__name__}: {item!r}"
            )
        encoded.append(_encode_edited(item, f"{type_label} element {index}"))
    return encoded


class ListAccessor(JSONAccessor):
    kind = ValueKind.LIST

    def __init__(self):
        super().__init__("LIST")

    def _read(self, client, key):
        return [_decode(item) for item in client.lrange(key, 0, -1)]

    def _check(self, value):
        return _check_string_array(value, "list")

    def _recreate(self, pipe, key, value):
        pipe.rpush(key, *value)


class SetAccessor(JSONAccessor):
    kind = ValueKind.SET

    def __init__(self):
        super().__init__("SET")

    def _read(self, client, key):
        return [_decode(member) for member in client.smembers(key)]

    def _check(self, value):
        return _check_string_array(value, "set")

    def _recreate(self, pipe, key, value):
        pipe.sadd(key, *value)


class HashAccessor(JSONAccessor):
    kind = ValueKind.HASH

    def __init__(self):
        super().__init__("HASH")

    def _read(self, client, key):
        return {
            _decode(field): _decode(value)
            for field, value in client.hgetall(key).items()
        }

    def _check(self, value):
        if not isinstance(value, dict):
            raise MalformedEdit(
                f"a hash must be a JSON object, got {type(value).__name__}"
            )
        encoded = {}
        for field, item in value.items():
            if not isinstance(item, str):
                raise MalformedEdit(
                    f"hash field {field!r} must have a string value, "
                    f"got {type(item).__name__}: {item!r}"
                )
            encoded[_encode_edited(field, "hash field")] = _encode_edited(
                item, f"hash field {field!r}"
            )
        return encoded

    def _recreate(self, pipe, key, value):
        pipe.hset(key, mapping=value)


class ZSetAccessor(JSONAccessor):
    kind = ValueKind.ZSET

    def __init__(self):
        super().__init__("ZSET")

    @staticmethod
    def _score(score: float):
        # Whole scores read better as 1 than 1.0
        if math.isfinite(score) and score.is_integer():
            return int(score)
        return score

    def _read(self, client, key):
        return {
            _decode(member): self._score(score)
            for member, score in client.zrange(key, 0, -1, withscores=True)
        }

    def _check(self, value):
        if not isinstance(value, dict):
            raise MalformedEdit(
                f"a zset must be a JSON object, got {type(value).__name__}"
            )
        encoded = {}
        for member, score in value.items():
            if isinstance(score, bool) or not isinstance(score, (int, float)):
                raise MalformedEdit(
                    f"zset member {member!r} must have a numeric score, "
                    f"got {type(score).__name__}: {score!r}"
                )
            # Redis scores are doubles
            try:
                score = float(score)
            except OverflowError as e:
                raise MalformedEdit(
                    f"zset member {member!r} has a score too large for a double"
                ) from e
            if math.isnan(score):
                raise MalformedEdit(f"zset member {member!r} has a NaN score")
            encoded[_encode_edited(member, "zset member")] = score
        return encoded

    def _recreate(self, pipe, key, value):
        pipe.zadd(key, value)


ACCESSORS: Dict[ValueKind, Accessor] = {
    ValueKind.STRING: StringAccessor(),
    ValueKind.LIST: ListAccessor(),
    ValueKind.SET: SetAccessor(),
    ValueKind.HASH: HashAccessor(),
    ValueKind.ZSET: ZSetAccessor(),
}

_unregistered = [kind.value for kind in ValueKind if kind not in ACCESSORS]
if _unregistered:
    raise RuntimeError(f"No accessor registered for: {', '.join(_unregistered)}")


def lookup_accessor(kind: ValueKind) -> Accessor:
    """Return the accessor for a kind."""
    try:
        return ACCESSORS[kind]
    except KeyError:
        raise UnsupportedKind(f"Redis type {kind!r} not supported") from None


# ============================================================================
# Annotation
# ============================================================================

COMMENT_MARKER = b"#"
ANNOTATION_WIDTH = 79


def annotate(description: str, data: bytes) -> bytes:
    """Prepend the description as a block of "# " comment lines."""
    if not description:
        return data
    lines = textwrap.wrap(
        description,
        width=ANNOTATION_WIDTH,
        initial_indent="# ",
        subsequent_indent="# ",
    )
    header = "".join(f"{line}\n" for line in lines)
    return _encode(header) + data


def is_comment_line(line: bytes) -> bool:
    """True for lines that start with a comment marker after optional whitespace."""
    return line.lstrip().startswith(COMMENT_MARKER)


def strip_annotation(data: bytes) -> bytes:
    """
    Remove every comment line from edited text.

    Lines are dropped wherever they appear, not only in the header, so a
    payload line beginning with "#" is removed as well.
    """
    return b"".join(
        line for line in data.splitlines(keepends=True) if not is_comment_line(line)
    )


# ============================================================================
# Editor Management
# ============================================================================


class EditorConfig:
    """Manage editor resolution and launching."""

    FALLBACK_EDITORS = ["nano", "pico", "vim", "vi", "emacs"]

    @staticmethod
    def get_editor(configured: Optional[str] = None) -> List[str]:
        """
        Get the editor command in order of precedence:
        1. Explicitly configured editor (--editor or user config)
        2. EDITOR environment variable
        3. System defaults (nano, pico, vim, vi, emacs)

        Returns:
            The editor command split into arguments

        Raises:
            EditorNotFound: If no editor could be determined
        """
        editor = configured or os.environ.get("EDITOR")

        if not editor:
            for editor_name in EditorConfig.FALLBACK_EDITORS:
                if EditorConfig._editor_exists(editor_name):
                    editor = editor_name
                    break

        try:
            command = shlex.split(editor) if editor else []
        except ValueError as e:
            raise EditorNotFound(f"Unable to parse editor command {editor!r}: {e}") from e
        if not command:
            raise EditorNotFound(
                "No editor found. Set the EDITOR environment variable, pass "
                "--editor, or add an 'editor' entry to "
                f"{get_user_config_path()}"
            )
        return command

    @staticmethod
    def _editor_exists(editor_name: str) -> bool:
        """Check if editor is available in PATH."""
        return shutil.which(editor_name) is not None

    @staticmethod
    def launch_editor(command: List[str], path: str) -> None:
        """
        Run the editor on a file and wait for it to exit.

        The editor inherits this process's stdin, stdout and stderr.

        Raises:
            EditorAborted: If the editor cannot be started or exits non-zero
        """
        try:
            result = subprocess.run([*command, path])
        except OSError as e:
            raise EditorAborted(f"Unable to start editor {command[0]!r}: {e}") from e

        if result.returncode != 0:
            raise EditorAborted(
                f"Editor {command[0]!r} exited with status {result.returncode}, "
                "edit discarded"
            )


# ============================================================================
# Scratch File
# ============================================================================


class ScratchFile:
    """A temporary file that is always removed when the context exits."""

    def __init__(self, suffix: str = ""):
        self.suffix = suffix
        self.path: Optional[str] = None

    def __enter__(self) -> "ScratchFile":
        try:
            with tempfile.NamedTemporaryFile(
                prefix="redis-edit-",
                suffix=self.suffix,
                delete=False,
            ) as f:
                self.path = f.name
        except OSError as e:
            raise ScratchFileError(f"Unable to create temporary file: {e}") from e
        return self

    def write(self, data: bytes) -> None:
        try:
            with open(self.path, "wb") as f:
                f.write(data)
        except OSError as e:
            raise ScratchFileError(f"Failed to write tempfile {self.path}: {e}") from e

    def read(self) -> bytes:
        try:
            with open(self.path, "rb") as f:
                return f.read()
        except OSError as e:
            raise ScratchFileError(f"Failed to read tempfile {self.path}: {e}") from e

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self.path:
            try:
                os.unlink(self.path)
            except FileNotFoundError:
                pass
        return False


# ============================================================================
# Edit Session
# ============================================================================


class EditSession:
    """
    One fetch, edit and write cycle for a single key.

    The key is written at most once, and only when the edit changed its
    payload and the result validated. Nothing guards against another client
    changing the key while the editor is open: the last write wins.
    """

    def __init__(
        self,
        client: redis.Redis,
        key: str,
        raw: bool = False,
        editor: Optional[List[str]] = None,
        verbose: bool = False,
    ):
        self.client = client
        self.key = key
        self.raw = raw
        self.editor = editor
        self.verbose = verbose

        self.kind: Optional[ValueKind] = None
        self.original: Optional[bytes] = None
        self.edited: Optional[bytes] = None
        self.changed = False

    def _note(self, message: str) -> None:
        if self.verbose:
            print(message, file=sys.stderr)

    def _resolve_kind(self) -> ValueKind:
        try:
            type_name = self.client.type(self.key)
        except redis.RedisError as e:
            raise StoreReadError(f"Unable to get key {self.key!r}: {e}") from e
        return ValueKind.from_store(type_name)

    def _detect_change(self, accessor: Accessor) -> bool:
        if self.edited == self.original:
            return False
        if accessor.description:
            return strip_annotation(self.edited) != strip_annotation(self.original)
        return True

    def run(self) -> bool:
        """
        Run the session.

        Returns:
            True if the key was written, False if nothing changed

        Raises:
            RedisEditError: On any failure; Redis is left untouched unless
                the final write itself was reached
        """
        self.kind = self._resolve_kind()
        accessor = lookup_accessor(self.kind)
        self._note(f"Key {self.key!r} is a {self.kind.value}")

        snapshot = accessor.fetch(self.client, self.key)
        self.original = annotate(accessor.description, snapshot.data)

        editor = self.editor or EditorConfig.get_editor()
        with ScratchFile(suffix=accessor.suffix) as scratch:
            scratch.write(self.original)
            self._note(f"Editing {scratch.path} with {shlex.join(editor)}")
            EditorConfig.launch_editor(editor, scratch.path)
            self.edited = scratch.read()

        self.changed = self._detect_change(accessor)
        if not self.changed:
            self._note("No changes detected, nothing written")
            return False

        data = self.edited
        if accessor.description:
            data = strip_annotation(data)
        value = accessor.validate(data, snapshot, raw=self.raw)

        accessor.write(self.client, self.key, value)
        self._note(f"Wrote {self.kind.value} {self.key!r}")
        return True


# ============================================================================
# User Configuration
# ============================================================================

CONNECTION_DEFAULTS = {"host": "127.0.0.1", "port": 6379, "db": 0}

_CONNECTION_TYPES = {
    "host": str,
    "port": int,
    "socket": str,
    "db": int,
    "password": str,
}


def get_user_config_path() -> Path:
    """Return the path to the user configuration file (~/.config/redis-edit/config.toml)."""
    return Path.home() / ".config" / "redis-edit" / "config.toml"


def load_user_config(config_path: Optional[Path] = None) -> dict:
    """
    Load and validate the user configuration.

    Optional keys:
    - editor: Editor command, used before $EDITOR
    - [connection]: host, port, socket, db, password defaults

    Returns:
        Configuration dictionary, or empty dict if the file is missing

    Raises:
        ConfigError: If the file is unreadable or has invalid values
    """
    config_path = config_path or get_user_config_path()

    if not config_path.exists():
        return {}

    try:
        with open(config_path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML syntax in {config_path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read user config from {config_path}: {e}") from e

    if "editor" in config and not isinstance(config["editor"], str):
        raise ConfigError(
            f"Field 'editor' in {config_path} must be a string, "
            f"got {type(config['editor']).__name__}"
        )

    connection = config.get("connection", {})
    if not isinstance(connection, dict):
        raise ConfigError(
            f"[connection] section in {config_path} must be a table.\n\n"
            f"Expected format:\n"
            f"  [connection]\n"
            f"  host = \"127.0.0.1\"\n"
            f"  port = 6379\n"
        )

    for field, value in connection.items():
        expected = _CONNECTION_TYPES.get(field)
        if expected is None:
            raise ConfigError(
                f"Unknown field '{field}' in [connection] of {config_path} "
                f"(known: {', '.join(_CONNECTION_TYPES)})"
            )
        if isinstance(value, bool) or not isinstance(value, expected):
            raise ConfigError(
                f"Field 'connection.{field}' in {config_path} must be "
                f"{'an integer' if expected is int else 'a string'}, "
                f"got {type(value).__name__}"
            )

    return config


def save_user_config(config: dict, config_path: Optional[Path] = None) -> Path:
    """Save the user configuration, creating its directory if needed."""
    config_path = config_path or get_user_config_path()
    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "wb") as f:
            tomli_w.dump(config, f)
    except OSError as e:
        raise ConfigError(f"Failed to write user config to {config_path}: {e}") from e
    return config_path


# ============================================================================
# CLI
# ============================================================================


class RedisEditCLI:
    """Command-line interface for editing a Redis key."""

    def __init__(self):
        # -h is the hostname, as with redis-cli
        self.parser = argparse.ArgumentParser(
            prog="redis-edit",
            description=(
                "Get a Redis key and open it in your favorite EDITOR. When\n"
                "changes were made they are written back to the same key.\n\n"
                "Complex data types are edited as a JSON representation that\n"
                "is converted back when written to Redis. Supported types:\n"
                "string, list, set, hash, zset."
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
            add_help=False,
        )
        self._add_arguments(self.parser)

    def _add_arguments(self, parser):
        parser.add_argument("key", help="The Redis key to edit")
        parser.add_argument(
            "--help",
            action="help",
            help="Show this screen",
        )
        parser.add_argument(
            "--version",
            action="version",
            version=f"redis-edit {__version__}",
            help="Show version",
        )

        conn_group = parser.add_argument_group("connection")
        conn_group.add_argument(
            "-h", "--host",
            metavar="HOSTNAME",
            help=f"Server hostname [default: {CONNECTION_DEFAULTS['host']}]",
        )
        conn_group.add_argument(
            "-p", "--port",
            type=int,
            help=f"Server port [default: {CONNECTION_DEFAULTS['port']}]",
        )
        conn_group.add_argument(
            "-s", "--socket",
            help="Server socket (overrides hostname and port)",
        )
        conn_group.add_argument(
            "-a", "--password",
            help="Password to use when connecting to the server",
        )
        conn_group.add_argument(
            "-n", "--db",
            type=int,
            help=f"Database number [default: {CONNECTION_DEFAULTS['db']}]",
        )

        parser.add_argument(
            "-r", "--raw",
            action="store_true",
            help="Raw writes, don't validate edits (only for string)",
        )
        parser.add_argument(
            "-e", "--editor",
            help="Editor command (overrides config and EDITOR)",
        )
        parser.add_argument(
            "--save",
            action="store_true",
            help="Remember the given connection options and editor (never the password)",
        )
        parser.add_argument(
            "-v", "--verbose",
            action="store_true",
            help="Describe each step on stderr",
        )

    @staticmethod
    def resolve_connection(args, config: dict) -> Dict[str, Any]:
        """
        Merge connection settings: command line, then user config, then defaults.

        Returns:
            Keyword arguments for redis.Redis
        """
        stored = config.get("connection", {})

        def pick(name):
            value = getattr(args, name, None)
            if value is not None:
                return value
            if name in stored:
                return stored[name]
            return CONNECTION_DEFAULTS.get(name)

        options = {"db": pick("db"), "password": pick("password")}
        socket_path = pick("socket")
        if socket_path:
            options["unix_socket_path"] = socket_path
        else:
            options["host"] = pick("host")
            options["port"] = pick("port")
        return options

    def _save_defaults(self, args, config: dict) -> None:
        connection = dict(config.get("connection", {}))
        for name in ("host", "port", "socket", "db"):
            value = getattr(args, name)
            if value is not None:
                connection[name] = value

        updated = dict(config)
        if connection:
            updated["connection"] = connection
        if args.editor:
            updated["editor"] = args.editor

        path = save_user_config(updated)
        print(f"✓ Saved defaults to {path}", file=sys.stderr)

    def run(self, args: Optional[List[str]] = None):
        """Run CLI."""
        parsed = self.parser.parse_args(args)

        try:
            config = load_user_config()
            if parsed.save:
                self._save_defaults(parsed, config)

            editor = EditorConfig.get_editor(parsed.editor or config.get("editor"))
            client = redis.Redis(**self.resolve_connection(parsed, config))

            session = EditSession(
                client,
                parsed.key,
                raw=parsed.raw,
                editor=editor,
                verbose=parsed.verbose,
            )
            if session.run():
                print(f"✓ Wrote {session.kind.value} {parsed.key!r}")
            else:
                print(f"No changes made to {parsed.key!r}", file=sys.stderr)

        except (RedisEditError, ConfigError) as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        except KeyboardInterrupt:
            print("\nCancelled", file=sys.stderr)
            sys.exit(130)


# ============================================================================
# Main
# ============================================================================


def main():
    """Entry point."""
    cli = RedisEditCLI()
    cli.run()


if __name__ == "__main__":
    main()
