"""Volume mount list construction and container CLI arg building."""

from __future__ import annotations

from nanoclaw.config import get_settings
from nanoclaw.types import RegisteredGroup, VolumeMount


def _build_volume_mounts(group: RegisteredGroup, is_main: bool) -> list[VolumeMount]:
    """Build the mount list for a container invocation.

    Every group gets its own working directory, session directory and IPC
    namespace. Main additionally sees the project root read-only so it can
    inspect other groups' folders.
    """
    s = get_settings()
    mounts: list[VolumeMount] = []

    group_dir = s.groups_dir / group.folder
    group_dir.mkdir(parents=True, exist_ok=True)
    mounts.append(VolumeMount(str(group_dir), "/workspace/group", readonly=False))

    if is_main:
        mounts.append(VolumeMount(str(s.project_root), "/workspace/project", readonly=True))

    # Per-group agent sessions directory (isolated from other groups)
    session_dir = s.data_dir / "sessions" / group.folder / ".claude"
    session_dir.mkdir(parents=True, exist_ok=True)
    mounts.append(VolumeMount(str(session_dir), "/home/agent/.claude", readonly=False))

    # Per-group IPC namespace (mailbox + snapshots)
    group_ipc_dir = s.data_dir / "ipc" / group.folder
    (group_ipc_dir / "messages").mkdir(parents=True, exist_ok=True)
    mounts.append(VolumeMount(str(group_ipc_dir), "/workspace/ipc", readonly=False))

    return mounts


def _build_container_args(mounts: list[VolumeMount], container_name: str) -> list[str]:
    """Build CLI args for `<runtime> run`.

    ``-i`` keeps stdin attached: the input JSON and the close sentinel both
    travel over it. ``--rm`` removes the container once the agent exits.
    """
    args = ["run", "-i", "--rm", "--name", container_name]
    for m in mounts:
        if m.readonly:
            args.extend(
                [
                    "--mount",
                    f"type=bind,source={m.host_path},target={m.container_path},readonly",
                ]
            )
        else:
            args.extend(["-v", f"{m.host_path}:{m.container_path}"])
    args.append(get_settings().container.image)
    return args
