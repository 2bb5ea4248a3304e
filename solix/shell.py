"""Interactive command shell over a virtual filesystem and process table.

The shell writes everything it prints to a text stream.  The filesystem,
process table, memory figures, disk usage and timer are supplied by the
caller, so the shell can run against any backend that offers the small
:class:`_FileSystem` interface.
"""

from __future__ import annotations

import logging
import re
import sys
import time
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, TextIO, Tuple

from solix.slab import KMALLOC_SIZES, SlabAllocator, SlabError

logger = logging.getLogger(__name__)

MAX_CMD_LEN = 256
MAX_ARGS = 16
MAX_PATH = 512
MAX_COMMANDS = 64

KEY_BACKSPACE = "\b"
KEY_TAB = "\t"
KEY_ENTER = "\n"
KEY_ESCAPE = "\x1b"

O_RDONLY = 0x0000
O_WRONLY = 0x0001
O_RDWR = 0x0002
O_CREAT = 0x0040
O_TRUNC = 0x0200

PERM_READ = 0x100
PERM_WRITE = 0x200
PERM_EXEC = 0x400

DEFAULT_BLOCK_SIZE = 4096
CAT_BUFFER_SIZE = 1024
CLEAR_SCREEN = "\x1b[2J\x1b[H"
BANNER = "SolixOS Shell v1.0\nType 'help' for available commands\n\n"
TEST_FILE = "/test_file"
TEST_DATA = b"Hello, SolixOS!"

_MASK32 = 0xFFFFFFFF
_SEPARATORS = re.compile(r"[ \t]+")
_ATOI = re.compile(r"[ \t\n\v\f\r]*([+-]?\d+)")


class FileType(IntEnum):
    """Inode file types."""

    REGULAR = 1
    DIRECTORY = 2
    DEVICE = 3


class ProcessState(IntEnum):
    """Scheduler states shown by ``ps``."""

    RUNNING = 0
    READY = 1
    BLOCKED = 2
    TERMINATED = 3


_STATE_LABELS = {
    ProcessState.RUNNING: "RUN  ",
    ProcessState.READY: "READY",
    ProcessState.BLOCKED: "BLK  ",
}


@dataclass
class Process:
    """An entry of the process table."""

    pid: int
    ppid: int = 0
    state: ProcessState = ProcessState.READY


CommandFunc = Callable[[List[str]], int]


@dataclass
class Command:
    """A named shell command."""

    name: str
    func: CommandFunc
    description: str


class SystemHalt(Exception):
    """Raised when the shell halts the system."""


class SystemReboot(Exception):
    """Raised when the shell reboots the system."""


class _FileSystem(Protocol):
    """What the shell needs from a filesystem; failures raise OSError."""

    def open(self, path: str, flags: int) -> int: ...

    def close(self, fd: int) -> None: ...

    def read(self, fd: int, count: int) -> bytes: ...

    def write(self, fd: int, data: bytes) -> int: ...

    def readdir(self, path: str) -> Iterable[Tuple[int, str]]: ...

    def stat(self, path: str) -> Any: ...

    def mkdir(self, path: str) -> None: ...

    def unlink(self, path: str) -> None: ...

    def mount(self, device: str, mountpoint: str) -> None: ...

    def umount(self, mountpoint: str) -> None: ...


def parse(line: str) -> List[str]:
    """Split ``line`` on spaces and tabs, keeping at most ``MAX_ARGS`` words."""
    return [word for word in _SEPARATORS.split(line) if word][:MAX_ARGS]


def _atoi(text: str) -> int:
    match = _ATOI.match(text)
    return int(match.group(1)) if match else 0


def _default_ticks() -> int:
    return (time.monotonic_ns() // 10_000_000) & _MASK32


def _default_wait(ticks: int) -> None:
    time.sleep(ticks / 100)


class Shell:
    """Command interpreter with the built-in command set."""

    def __init__(
        self,
        fs: _FileSystem,
        out: Optional[TextIO] = None,
        processes: Optional[List[Process]] = None,
        allocator: Optional[SlabAllocator] = None,
        ticks: Optional[Callable[[], int]] = None,
        wait: Optional[Callable[[int], None]] = None,
        meminfo: Optional[Callable[[], Tuple[int, int, int]]] = None,
        disk_usage: Optional[Callable[[], Tuple[int, int, int]]] = None,
    ) -> None:
        self.fs = fs
        self.out = out if out is not None else sys.stdout
        self.processes = processes if processes is not None else []
        if allocator is None:
            allocator = SlabAllocator(max_size=max(KMALLOC_SIZES))
            allocator.init_kmalloc_caches()
        self.allocator = allocator
        self.ticks = ticks or _default_ticks
        self.wait = wait or _default_wait
        self.meminfo = meminfo or (lambda: (0, 0, 0))
        self.disk_usage = disk_usage or (lambda: (0, 0, DEFAULT_BLOCK_SIZE))
        self.current_dir = "/"
        self.commands: Dict[str, Command] = {}
        for name, func, description in (
            ("help", self.cmd_help, "Show this help message"),
            ("clear", self.cmd_clear, "Clear the screen"),
            ("ls", self.cmd_ls, "List directory contents"),
            ("cd", self.cmd_cd, "Change directory"),
            ("pwd", self.cmd_pwd, "Print working directory"),
            ("cat", self.cmd_cat, "Display file contents"),
            ("echo", self.cmd_echo, "Echo arguments"),
            ("mkdir", self.cmd_mkdir, "Create directory"),
            ("touch", self.cmd_touch, "Create empty file"),
            ("rm", self.cmd_rm, "Remove file or directory"),
            ("ps", self.cmd_ps, "List processes"),
            ("kill", self.cmd_kill, "Terminate process"),
            ("reboot", self.cmd_reboot, "Reboot system"),
            ("halt", self.cmd_halt, "Halt system"),
            ("meminfo", self.cmd_meminfo, "Show memory information"),
            ("mount", self.cmd_mount, "Mount filesystem"),
            ("umount", self.cmd_umount, "Unmount filesystem"),
            ("df", self.cmd_df, "Show disk usage"),
            ("test", self.cmd_test, "Run system tests"),
        ):
            self.register_command(name, func, description)

    def _print(self, text: str) -> None:
        self.out.write(text)

    # Core loop

    def register_command(self, name: str, func: CommandFunc, description: str) -> None:
        """Add a command; once the table holds ``MAX_COMMANDS`` new ones are ignored."""
        if len(self.commands) >= MAX_COMMANDS:
            logger.warning("command table full, %r not registered", name)
            return
        self.commands.setdefault(name, Command(name, func, description))

    def prompt(self) -> str:
        """Print and return the prompt."""
        text = f"solixos:{self.current_dir}$ "
        self._print(text)
        return text

    def readline(self, keys: Iterable[str]) -> str:
        """Assemble a line from keystrokes, echoing them; Enter ends the line."""
        chars: List[str] = []
        for key in keys:
            if key == KEY_ENTER:
                self._print("\n")
                return "".join(chars)
            if key == KEY_BACKSPACE:
                if chars:
                    chars.pop()
                    self._print(KEY_BACKSPACE)
            elif " " <= key <= "~" and len(chars) < MAX_CMD_LEN - 1:
                chars.append(key)
                self._print(key)
        raise EOFError("input ended before a newline")

    def execute(self, argv: List[str]) -> Optional[int]:
        """Run the command named by ``argv[0]``; ``None`` if there is no such command."""
        command = self.commands.get(argv[0])
        if command is None:
            self._print(f"Command not found: {argv[0]}\n")
            return None
        return command.func(argv)

    def run_line(self, line: str) -> Optional[int]:
        """Parse and execute one line; blank lines do nothing and give ``None``."""
        argv = parse(line)
        if not argv:
            return None
        return self.execute(argv)

    def run(self, lines: Iterable[str]) -> None:
        """Print the banner, then prompt for and run each line."""
        self._print(BANNER)
        for line in lines:
            self.prompt()
            self.run_line(line)

    def resolve_path(self, name: str) -> str:
        """Absolute path for ``name`` relative to the current directory."""
        if name.startswith("/"):
            return name
        separator = "" if self.current_dir == "/" else "/"
        return f"{self.current_dir}{separator}{name}"

    def _is_directory(self, path: str) -> bool:
        try:
            return self.fs.stat(path).mode == FileType.DIRECTORY
        except OSError:
            return False

    # Built-in commands

    def cmd_help(self, argv: List[str]) -> int:
        self._print("Available commands:\n")
        for command in self.commands.values():
            self._print(f"  {command.name} - {command.description}\n")
        return 0

    def cmd_clear(self, argv: List[str]) -> int:
        self._print(CLEAR_SCREEN)
        return 0

    def cmd_ls(self, argv: List[str]) -> int:
        path = self.current_dir if len(argv) == 1 else self.resolve_path(argv[1])
        try:
            entries = list(self.fs.readdir(path))
        except OSError:
            self._print(f"ls: cannot access '{path}': No such file or directory\n")
            return 1
        separator = "" if path == "/" else "/"
        for inode, name in entries:
            if inode == 0:
                continue
            self._print(name)
            if self._is_directory(f"{path}{separator}{name}"):
                self._print("/")
            self._print("  ")
        self._print("\n")
        return 0

    def cmd_cd(self, argv: List[str]) -> int:
        if len(argv) != 2:
            self._print("Usage: cd <directory>\n")
            return 1
        new_path = re.sub(r"/{2,}", "/", self.resolve_path(argv[1]))
        if not self._is_directory(new_path):
            self._print(f"cd: '{argv[1]}': No such directory\n")
            return 1
        self.current_dir = new_path
        return 0

    def cmd_pwd(self, argv: List[str]) -> int:
        self._print(f"{self.current_dir}\n")
        return 0

    def cmd_cat(self, argv: List[str]) -> int:
        if len(argv) != 2:
            self._print("Usage: cat <file>\n")
            return 1
        try:
            fd = self.fs.open(self.resolve_path(argv[1]), O_RDONLY)
        except OSError:
            self._print(f"cat: '{argv[1]}': No such file\n")
            return 1
        try:
            data = self.fs.read(fd, CAT_BUFFER_SIZE - 1)
        finally:
            self.fs.close(fd)
        if data:
            self._print(data.split(b"\0", 1)[0].decode("utf-8", errors="replace"))
        self._print("\n")
        return 0

    def cmd_echo(self, argv: List[str]) -> int:
        self._print(" ".join(argv[1:]) + "\n")
        return 0

    def cmd_mkdir(self, argv: List[str]) -> int:
        if len(argv) != 2:
            self._print("Usage: mkdir <directory>\n")
            return 1
        try:
            self.fs.mkdir(self.resolve_path(argv[1]))
        except OSError:
            self._print(f"mkdir: cannot create directory '{argv[1]}'\n")
            return 1
        return 0

    def cmd_touch(self, argv: List[str]) -> int:
        if len(argv) != 2:
            self._print("Usage: touch <file>\n")
            return 1
        try:
            fd = self.fs.open(self.resolve_path(argv[1]), O_CREAT | O_WRONLY)
        except OSError:
            self._print(f"touch: cannot create file '{argv[1]}'\n")
            return 1
        self.fs.close(fd)
        return 0

    def cmd_rm(self, argv: List[str]) -> int:
        if len(argv) != 2:
            self._print("Usage: rm <file>\n")
            return 1
        try:
            self.fs.unlink(self.resolve_path(argv[1]))
        except OSError:
            self._print(f"rm: cannot remove '{argv[1]}'\n")
            return 1
        return 0

    def cmd_ps(self, argv: List[str]) -> int:
        self._print("PID  STATE  PPID  COMMAND\n")
        for proc in self.processes:
            if proc.state == ProcessState.TERMINATED:
                continue
            label = _STATE_LABELS.get(proc.state, "UNK  ")
            self._print(f"{proc.pid}   {label}   {proc.ppid}   [kernel]\n")
        return 0

    def cmd_kill(self, argv: List[str]) -> int:
        if len(argv) != 2:
            self._print("Usage: kill <pid>\n")
            return 1
        pid = _atoi(argv[1]) & _MASK32
        for proc in self.processes:
            if proc.pid == pid and proc.state != ProcessState.TERMINATED:
                proc.state = ProcessState.TERMINATED
                self._print(f"Process {pid} terminated\n")
                return 0
        self._print(f"Process not found: {pid}\n")
        return 1

    def cmd_reboot(self, argv: List[str]) -> int:
        self._print("Rebooting system...\n")
        self.wait(100)
        raise SystemReboot("reboot requested")

    def cmd_halt(self, argv: List[str]) -> int:
        self._print("Halting system...\n")
        self.wait(100)
        raise SystemHalt("halt requested")

    def cmd_meminfo(self, argv: List[str]) -> int:
        total_frames, used_frames, heap_used = self.meminfo()
        self._print(
            "Memory Information:\n"
            f"Total frames: {total_frames}\n"
            f"Used frames: {used_frames}\n"
            f"Free frames: {total_frames - used_frames}\n"
            f"Kernel heap used: {heap_used} bytes\n"
        )
        return 0

    def cmd_mount(self, argv: List[str]) -> int:
        if len(argv) != 3:
            self._print("Usage: mount <device> <mountpoint>\n")
            return 1
        try:
            self.fs.mount(argv[1], argv[2])
        except OSError:
            self._print("Mount failed\n")
            return 1
        self._print(f"Mounted {argv[1]} at {argv[2]}\n")
        return 0

    def cmd_umount(self, argv: List[str]) -> int:
        if len(argv) != 2:
            self._print("Usage: umount <mountpoint>\n")
            return 1
        try:
            self.fs.umount(argv[1])
        except OSError:
            self._print("Unmount failed\n")
            return 1
        self._print(f"Unmounted {argv[1]}\n")
        return 0

    def cmd_df(self, argv: List[str]) -> int:
        total_blocks, free_blocks, block_size = self.disk_usage()
        size = total_blocks * block_size // 1024
        used = (total_blocks - free_blocks) * block_size // 1024
        free = free_blocks * block_size // 1024
        self._print("Filesystem    Size    Used    Available    Mount point\n")
        self._print(f"SolixFS       {size}K    {used}K    {free}K    /\n")
        return 0

    def _memory_test(self) -> bool:
        objs: List[Optional[int]] = []
        try:
            for size in (1024, 2048, 4096):
                objs.append(self.allocator.kmalloc(size))
            return all(obj is not None for obj in objs)
        except SlabError:
            return False
        finally:
            for obj in objs:
                self.allocator.kfree(obj)

    def _filesystem_test(self) -> Optional[bool]:
        try:
            fd = self.fs.open(TEST_FILE, O_CREAT | O_WRONLY)
        except OSError:
            return None
        self.fs.write(fd, TEST_DATA)
        self.fs.close(fd)
        try:
            fd = self.fs.open(TEST_FILE, O_RDONLY)
        except OSError:
            return None
        data = self.fs.read(fd, 31)
        self.fs.close(fd)
        passed = data.split(b"\0", 1)[0] == TEST_DATA
        self.fs.unlink(TEST_FILE)
        return passed

    def cmd_test(self, argv: List[str]) -> int:
        self._print("Running system tests...\n")
        if self._memory_test():
            self._print("[+] Memory allocation test passed\n")
        else:
            self._print("[-] Memory allocation test failed\n")

        fs_result = self._filesystem_test()
        if fs_result is True:
            self._print("[+] Filesystem test passed\n")
        elif fs_result is False:
            self._print("[-] Filesystem test failed\n")

        start = self.ticks()
        self.wait(10)
        end = self.ticks()
        if (end - start) & _MASK32 >= 10:
            self._print("[+] Timer test passed\n")
        else:
            self._print("[-] Timer test failed\n")

        self._print("System tests completed\n")
        return 0