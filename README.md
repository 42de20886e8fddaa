# openpilot

This library provides the core pieces of a terminal pilot for coding agents. It does four things:

- keeps chat sessions together with their repositories and transcripts;
- saves sessions to SQLite;
- runs shell hooks for lifecycle triggers;
- drives provider processes, such as the `codex` command line tool, and turns their output into one stream of events.

## Install

```
pip install .
```

To run the test suite, install the test extra and run pytest:

```
pip install ".[test]"
pytest
```

Hooks run through `bash -lc`, so `bash` must be available. The codex adapter runs the `codex` executable, or whatever binary you give it.

## Modules

### `openpilot.domain`

The data model. `Role` is an enum with the values `user`, `assistant` and `system`. `Message`, `RepoRef` and `Session` are dataclasses.

### `openpilot.session.store`

`Store` holds sessions in memory, keyed by id and kept in creation order.

- `create_session`, `use_session` and `delete_session` manage sessions. The last two accept a session id or a session name, matched case-insensitively. They return `False` when nothing matches or the name is ambiguous.
- `add_repo_to_active_session(path, label)` attaches a repository and returns its `RepoRef`. A blank path means the current directory. The path is made absolute. A blank label becomes the directory name.
- Transcript methods:
  - `add_system_message` and `append_user_message` add to the active session.
  - `append_assistant_streaming` opens a streaming assistant message in the active session and returns its index.
  - `append_chunk_at` adds text to a message.
  - `finalize_at` ends streaming on a message.
  - `replace_message_at` and `delete_message_at` change or remove a message.
  - `append_assistant_message` and `append_system_message` add to a session given by id.
- Text views: `list_sessions_text` and `list_repos_text`.
- Id views: `session_ids`, `session_names` and `active_repo_ids`.
- Errors: operations that need an active session raise `LookupError` when there is none. So does `set_active_repo` when the repo id is unknown.

`Store(persister)` takes a `Persister`, which has `load()` and `save(snapshot)`. The store loads from the persister when it is created. It saves a `Snapshot` after every change.

- If loading fails, persistence is switched off.
- If saving fails, the store keeps its state.

In either case, `take_persistence_warning()` returns a message once. `snapshot()` and `apply_snapshot()` convert the store to and from `Snapshot`, `SessionSnapshot` and `MessageSnapshot`. Timestamps in snapshots are Unix seconds, and no message is restored as streaming.

### `openpilot.session.sqlite_store`

`SQLitePersister(path)` is a `Persister` backed by SQLite.

- With no path it uses `default_db_path()`, which is `open-pilot/sessions.db` in the user configuration directory.
- `save` replaces the stored snapshot in one transaction. `load` reads it back.
- If the file cannot be opened as a database, it is renamed to `<path>.corrupt.<timestamp>` and a fresh database is created.
- It can be used as a context manager, or closed with `close()`.

### `openpilot.hooks`

`HookService(catalog, load_error, builtin_skills_dir)` runs hooks for a trigger.

- The catalog is any object whose `hooks_for(trigger)` returns hooks. Each hook has these attributes:
  - `id`;
  - `execute`, a list of shell commands;
  - `timeout`, in seconds or as a `timedelta`;
  - `env`, a mapping;
  - `source_path`.
- `run(trigger, session_id, session_name, repo_path, on_update)` runs each command with `bash -lc`, in order.
- Each command's environment has these variables, set when their value is non-empty:
  - `OPEN_PILOT_SESSION_ID`
  - `OPEN_PILOT_SESSION_NAME`
  - `OPEN_PILOT_REPO_PATH`
  - `OPEN_PILOT_BUILTIN_SKILLS_DIR`
  - `OPEN_PILOT_HOOK_SOURCE_PATH`

  The hook's own `env` is applied on top of these.
- The run stops at the first failure. The failure reason is `exit=<code>`, `timeout` or `start error`.
- It returns a `RunResult` with per-hook `HookResult`s. `on_update` receives `ProgressUpdate`s while the run goes on.
- A non-empty `load_error` fails every run at once.

### `openpilot.providers.events`

This module holds:

- the normalised `Event` and `EventType`;
- `StartRequest` and `PromptRequest`;
- the abstract `Adapter`;
- `EventStream`, a thread-safe queue that can be closed and iterated;
- `parse_wrapper_event`, which turns a wrapper JSON line into an `Event`;
- `new_id`.

### `openpilot.providers.codex`

`CodexCLIAdapter(binary)` starts one `codex exec --json` process per prompt.

- The first prompt writes the final answer through `--output-last-message`. Later prompts use `resume <thread-id>`, with the thread id that codex reported. `thread_id(handle)` returns that id.
- The JSON stream is turned into events: status, chunk, reasoning, command execution, agent message, turn usage, final and error.
- Lines that cannot be mapped become `unknown` events and are written to the diagnostics log.

### `openpilot.providers.process`

`ProcessAdapter(ProviderConfig(...))` drives a long-running wrapper process.

- Prompts are sent to it as JSON lines on stdin. A `shutdown` message is sent when it is stopped.
- The JSON lines it prints on stdout become events.
- Its stderr lines become status events.

### `openpilot.providers.manager`

`ProviderManager(providers)` takes a mapping of provider id to `ProviderConfig`.

- The provider `codex` uses `CodexCLIAdapter`. Every other provider uses `ProcessAdapter`.
- `send_prompt` starts a session for each provider, session and repository on first use. It waits for the ready event, within `startup_timeout` seconds or 10 seconds by default, and then sends the prompt.
- `events()` is the merged `EventStream` of all sessions.
- `stop_all()` stops every running session.

### `openpilot.providers.diagnostics`

`log_provider_diagnostic` appends one JSON record per line. It rotates the file to `.1` once the file reaches 10 MiB.

## Example

```python
from openpilot.session.store import Store
from openpilot.session.sqlite_store import SQLitePersister

with SQLitePersister("sessions.db") as persister:
    store = Store(persister)
    store.create_session("Feature work")
    store.add_repo_to_active_session(".", "")
    print(store.list_repos_text())
```

## Environment

- `OPEN_PILOT_CODEX_DEBUG_LOG` sets the codex adapter's debug log. The default is `open-pilot-codex-debug.log` in the temp directory.
- `OPEN_PILOT_CODEX_ADD_DIRS` lists extra directories that codex may write to, separated by the OS path-list separator.
- `OPEN_PILOT_PROVIDER_DEBUG_LOG` sets the JSON-lines diagnostics log. The default is `/tmp/open-pilot-provider-events.log`.

## What this package does not do

It is a library, and it installs no command. It has no terminal user interface, so nothing here renders transcripts or reads keyboard input.

It does not read hook or provider configuration files. You must build the hook catalog and the `ProviderConfig` mapping yourself and pass them in.