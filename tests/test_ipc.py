import asyncio
import json
from pathlib import Path
from typing import Any

from tgclaw.app import App
from tgclaw.db import (
    create_task,
    get_all_tasks,
    get_last_group_sync,
    get_task,
    get_task_run_logs,
    log_task_run,
    update_task_after_run,
)
from tgclaw.ipc import list_source_groups, process_ipc_files


def _drop(
    app: App, folder: str, queue: str, payload: Any, name: str = "1000-abc.json"
) -> Path:
    queue_dir = app.settings.ipc_dir / folder / queue
    queue_dir.mkdir(parents=True, exist_ok=True)
    path = queue_dir / name
    if isinstance(payload, str):
        path.write_text(payload)
    else:
        path.write_text(json.dumps(payload))
    return path


def _drain(app: App) -> None:
    asyncio.run(process_ipc_files(app))


def _errors(app: App) -> list[str]:
    errors_dir = app.settings.ipc_dir / "errors"
    return sorted(p.name for p in errors_dir.iterdir()) if errors_dir.exists() else []


def _alpha_task(app: App, task_id: str = "task-a") -> None:
    create_task(
        app.db,
        task_id=task_id,
        group_folder="alpha",
        chat_id="-200",
        prompt="alpha work",
        schedule_type="interval",
        schedule_value="60000",
        next_run="2025-01-01T00:00:00.000+00:00",
    )


def _schedule(folder: str, **extra: Any) -> dict[str, Any]:
    return {
        "type": "schedule_task",
        "prompt": "check the weather",
        "schedule_type": "interval",
        "schedule_value": "3600000",
        "groupFolder": folder,
        **extra,
    }


# --- schedule_task ---------------------------------------------------------


def test_group_schedules_for_itself(app: App) -> None:
    path = _drop(app, "alpha", "tasks", _schedule("alpha", context_mode="group"))

    _drain(app)

    [task] = get_all_tasks(app.db)
    assert task.group_folder == "alpha"
    assert task.chat_id == "-200"
    assert task.context_mode == "group"
    assert task.status == "active"
    assert task.next_run is not None
    assert task.id.startswith("task-")
    assert not path.exists()


def test_group_cannot_schedule_for_another_group(app: App) -> None:
    path = _drop(app, "alpha", "tasks", _schedule("beta"))

    _drain(app)

    assert get_all_tasks(app.db) == []
    assert not path.exists()
    assert _errors(app) == []


def test_main_schedules_for_any_group(app: App) -> None:
    _drop(app, "main", "tasks", _schedule("beta"))

    _drain(app)

    [task] = get_all_tasks(app.db)
    assert task.group_folder == "beta"
    assert task.chat_id == "-300"


def test_chat_comes_from_registry_not_payload(app: App) -> None:
    _drop(app, "alpha", "tasks", _schedule("alpha", chatId="100", isMain=True))

    _drain(app)

    [task] = get_all_tasks(app.db)
    assert task.chat_id == "-200"


def test_schedule_for_unregistered_group_is_dropped(app: App) -> None:
    _drop(app, "main", "tasks", _schedule("ghost"))

    _drain(app)

    assert get_all_tasks(app.db) == []


def test_invalid_schedule_is_refused(app: App) -> None:
    path = _drop(
        app,
        "alpha",
        "tasks",
        _schedule("alpha", schedule_type="cron", schedule_value="every day"),
    )

    _drain(app)

    assert get_all_tasks(app.db) == []
    assert not path.exists()


def test_unknown_context_mode_defaults_to_isolated(app: App) -> None:
    _drop(app, "alpha", "tasks", _schedule("alpha", context_mode="shared"))

    _drain(app)

    [task] = get_all_tasks(app.db)
    assert task.context_mode == "isolated"


# --- pause / resume / cancel -----------------------------------------------


def test_group_cannot_pause_another_groups_task(app: App) -> None:
    _alpha_task(app)
    _drop(app, "beta", "tasks", {"type": "pause_task", "taskId": "task-a"})

    _drain(app)

    task = get_task(app.db, "task-a")
    assert task is not None
    assert task.status == "active"


def test_owner_pauses_and_resumes(app: App) -> None:
    _alpha_task(app)

    _drop(app, "alpha", "tasks", {"type": "pause_task", "taskId": "task-a"})
    _drain(app)
    task = get_task(app.db, "task-a")
    assert task is not None
    assert task.status == "paused"

    _drop(app, "alpha", "tasks", {"type": "resume_task", "taskId": "task-a"})
    _drain(app)
    task = get_task(app.db, "task-a")
    assert task is not None
    assert task.status == "active"


def test_main_cancels_any_task(app: App) -> None:
    _alpha_task(app)
    log_task_run(
        app.db,
        task_id="task-a",
        run_at="2025-01-01T00:00:00.000+00:00",
        duration_ms=5,
        status="success",
    )
    _drop(app, "main", "tasks", {"type": "cancel_task", "taskId": "task-a"})

    _drain(app)

    assert get_task(app.db, "task-a") is None
    assert get_task_run_logs(app.db, "task-a") == []


def test_completed_task_is_not_resumed(app: App) -> None:
    _alpha_task(app)
    update_task_after_run(app.db, "task-a", next_run=None, last_result="Completed")
    _drop(app, "alpha", "tasks", {"type": "resume_task", "taskId": "task-a"})

    _drain(app)

    task = get_task(app.db, "task-a")
    assert task is not None
    assert task.status == "completed"
    assert task.next_run is None


def test_unknown_task_id_is_dropped(app: App) -> None:
    path = _drop(app, "main", "tasks", {"type": "cancel_task", "taskId": "nope"})

    _drain(app)

    assert not path.exists()
    assert _errors(app) == []


# --- send_message ----------------------------------------------------------


def test_group_sends_to_its_own_chat(app: App, channel) -> None:
    _drop(app, "alpha", "messages", {"type": "message", "chatId": "-200", "text": "hi"})

    _drain(app)

    assert channel.sent == [("-200", "Andy: hi")]


def test_group_cannot_send_to_another_chat(app: App, channel) -> None:
    path = _drop(
        app, "alpha", "messages", {"type": "message", "chatId": "-300", "text": "hi"}
    )

    _drain(app)

    assert channel.sent == []
    assert not path.exists()


def test_main_sends_anywhere(app: App, channel) -> None:
    _drop(app, "main", "messages", {"type": "message", "chatId": "-300", "text": "hi"})

    _drain(app)

    assert channel.sent == [("-300", "Andy: hi")]


def test_messages_drain_in_filename_order(app: App, channel) -> None:
    for i, text in enumerate(["one", "two", "three"]):
        _drop(
            app,
            "alpha",
            "messages",
            {"type": "message", "chatId": "-200", "text": text},
            name=f"100{i}-x.json",
        )

    _drain(app)

    assert [text for _, text in channel.sent] == ["Andy: one", "Andy: two", "Andy: three"]


# --- admin requests --------------------------------------------------------


def test_register_group_from_non_main_is_rejected(app: App) -> None:
    _drop(
        app,
        "alpha",
        "tasks",
        {
            "type": "register_group",
            "chatId": "-400",
            "name": "Evil",
            "folder": "evil",
            "trigger": "@Andy",
            "isMain": True,
        },
    )

    _drain(app)

    assert "-400" not in app.state.registered_groups


def test_main_registers_group(app: App) -> None:
    _drop(
        app,
        "main",
        "tasks",
        {
            "type": "register_group",
            "chatId": "-400",
            "name": "Gamma",
            "folder": "gamma",
            "trigger": "@Andy",
            "workerConfig": {"model": "claude-sonnet-4-5"},
        },
    )

    _drain(app)

    group = app.state.registered_groups["-400"]
    assert group.folder == "gamma"
    assert group.worker_config == {"model": "claude-sonnet-4-5"}
    assert (app.settings.groups_dir / "gamma" / "logs").is_dir()
    saved = json.loads((app.settings.data / "registered_groups.json").read_text())
    assert saved["-400"]["name"] == "Gamma"


def test_incomplete_registration_is_denied_not_quarantined(app: App) -> None:
    path = _drop(
        app,
        "main",
        "tasks",
        {"type": "register_group", "chatId": "-400", "name": "Gamma"},
    )

    _drain(app)

    assert "-400" not in app.state.registered_groups
    assert not path.exists()
    assert _errors(app) == []


def test_registration_with_unsafe_folder_is_denied(app: App) -> None:
    _drop(
        app,
        "main",
        "tasks",
        {
            "type": "register_group",
            "chatId": "-400",
            "name": "Gamma",
            "folder": "../escape",
            "trigger": "@Andy",
        },
    )

    _drain(app)

    assert "-400" not in app.state.registered_groups


def _register(folder: str, chat_id: str = "-999") -> dict[str, Any]:
    return {
        "type": "register_group",
        "chatId": chat_id,
        "name": "Newcomer",
        "folder": folder,
        "trigger": "@Andy",
    }


def test_second_chat_cannot_claim_main_folder(app: App) -> None:
    path = _drop(app, "main", "tasks", _register("main"))

    _drain(app)

    assert "-999" not in app.state.registered_groups
    main_chats = [
        chat_id
        for chat_id, group in app.state.registered_groups.items()
        if app.state.is_main(group.folder)
    ]
    assert main_chats == ["100"]
    assert not path.exists()


def test_new_chat_cannot_take_over_existing_folder(app: App) -> None:
    _drop(app, "main", "tasks", _register("alpha"))

    _drain(app)

    assert "-999" not in app.state.registered_groups
    assert app.state.chat_id_for_folder("alpha") == "-200"


def test_reregistering_same_chat_keeps_its_folder(app: App) -> None:
    _drop(app, "main", "tasks", {**_register("alpha", chat_id="-200"), "name": "Alpha 2"})

    _drain(app)

    assert app.state.registered_groups["-200"].name == "Alpha 2"


def test_refresh_groups_from_non_main_is_rejected(app: App, channel) -> None:
    channel.titles["-200"] = "Alpha Team"
    _drop(app, "alpha", "tasks", {"type": "refresh_groups"})

    _drain(app)

    assert get_last_group_sync(app.db) is None


def test_main_refreshes_groups(app: App, channel) -> None:
    channel.titles["-200"] = "Alpha Team"
    _drop(app, "main", "tasks", {"type": "refresh_groups"})

    _drain(app)

    assert get_last_group_sync(app.db) is not None
    snapshot = json.loads(
        (app.settings.ipc_dir / "main" / "available_groups.json").read_text()
    )
    names = {g["chat_id"]: g["name"] for g in snapshot["groups"]}
    assert names["-200"] == "Alpha Team"


# --- bad files -------------------------------------------------------------


def test_malformed_json_is_quarantined(app: App) -> None:
    path = _drop(app, "alpha", "tasks", "{not json", name="1000-bad.json")

    _drain(app)

    assert not path.exists()
    assert _errors(app) == ["alpha-1000-bad.json"]


def test_unknown_request_type_is_quarantined(app: App) -> None:
    _drop(app, "beta", "tasks", {"type": "format_disk"}, name="1000-odd.json")

    _drain(app)

    assert _errors(app) == ["beta-1000-odd.json"]


def test_request_in_wrong_queue_is_quarantined(app: App, channel) -> None:
    _drop(
        app,
        "alpha",
        "tasks",
        {"type": "message", "chatId": "-200", "text": "hi"},
        name="1000-misplaced.json",
    )

    _drain(app)

    assert channel.sent == []
    assert _errors(app) == ["alpha-1000-misplaced.json"]


def test_bad_file_does_not_block_the_rest(app: App) -> None:
    _drop(app, "alpha", "tasks", "garbage", name="1000-a.json")
    _drop(app, "alpha", "tasks", _schedule("alpha"), name="1001-b.json")

    _drain(app)

    assert len(get_all_tasks(app.db)) == 1
    assert _errors(app) == ["alpha-1000-a.json"]


def test_errors_dir_is_not_a_source(app: App) -> None:
    _drop(app, "alpha", "tasks", "garbage", name="1000-a.json")
    _drain(app)
    _drain(app)

    assert list_source_groups(app.settings.ipc_dir) == ["alpha"]
    assert _errors(app) == ["alpha-1000-a.json"]
