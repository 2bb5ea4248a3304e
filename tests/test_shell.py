import io
from types import SimpleNamespace

import pytest

from solix.shell import (
    BANNER,
    CLEAR_SCREEN,
    MAX_ARGS,
    MAX_CMD_LEN,
    O_CREAT,
    FileType,
    Process,
    ProcessState,
    Shell,
    SystemHalt,
    SystemReboot,
    parse,
)


class FakeFs:
    def __init__(self):
        self.dirs = {"/"}
        self.files = {}
        self.inodes = {"/": 1}
        self.next_inode = 2
        self.fds = {}
        self.next_fd = 3
        self.mounts = {}

    def _parent(self, path):
        parent = path.rsplit("/", 1)[0]
        return parent or "/"

    def _new_inode(self, path):
        self.inodes[path] = self.next_inode
        self.next_inode += 1

    def open(self, path, flags):
        if path not in self.files:
            if not flags & O_CREAT or self._parent(path) not in self.dirs:
                raise FileNotFoundError(path)
            self.files[path] = b""
            self._new_inode(path)
        fd = self.next_fd
        self.next_fd += 1
        self.fds[fd] = [path, 0]
        return fd

    def close(self, fd):
        del self.fds[fd]

    def read(self, fd, count):
        path, offset = self.fds[fd]
        data = self.files[path][offset:offset + count]
        self.fds[fd][1] += len(data)
        return data

    def write(self, fd, data):
        path = self.fds[fd][0]
        self.files[path] += bytes(data)
        return len(data)

    def readdir(self, path):
        if path not in self.dirs:
            raise FileNotFoundError(path)
        prefix = path if path.endswith("/") else path + "/"
        names = [p for p in list(self.dirs) + list(self.files)
                 if p != path and p.startswith(prefix) and "/" not in p[len(prefix):]]
        return [(self.inodes[p], p[len(prefix):]) for p in sorted(names)]

    def stat(self, path):
        if path in self.dirs:
            return SimpleNamespace(mode=FileType.DIRECTORY)
        if path in self.files:
            return SimpleNamespace(mode=FileType.REGULAR)
        raise FileNotFoundError(path)

    def mkdir(self, path):
        if path in self.dirs or self._parent(path) not in self.dirs:
            raise FileExistsError(path)
        self.dirs.add(path)
        self._new_inode(path)

    def unlink(self, path):
        if path not in self.files:
            raise FileNotFoundError(path)
        del self.files[path]

    def mount(self, device, mountpoint):
        if mountpoint not in self.dirs:
            raise FileNotFoundError(mountpoint)
        self.mounts[mountpoint] = device

    def umount(self, mountpoint):
        if mountpoint not in self.mounts:
            raise FileNotFoundError(mountpoint)
        del self.mounts[mountpoint]


class FakeClock:
    def __init__(self, advance=True):
        self.now = 0
        self.advance = advance
        self.waits = []

    def ticks(self):
        return self.now

    def wait(self, n):
        self.waits.append(n)
        if self.advance:
            self.now += n


def make_shell(**kwargs):
    out = io.StringIO()
    clock = kwargs.pop("clock", FakeClock())
    fs = kwargs.pop("fs", FakeFs())
    shell = Shell(fs, out=out, ticks=clock.ticks, wait=clock.wait, **kwargs)
    return shell, out, fs, clock


def test_parse_splits_on_spaces_and_tabs():
    assert parse("ls  -l\t/tmp ") == ["ls", "-l", "/tmp"]
    assert parse("   ") == []


def test_parse_limits_argument_count():
    words = [f"w{i}" for i in range(MAX_ARGS + 5)]
    assert parse(" ".join(words)) == words[:MAX_ARGS]


def test_prompt_shows_directory():
    shell, out, _, _ = make_shell()
    assert shell.prompt() == "solixos:/$ "
    assert out.getvalue() == "solixos:/$ "


def test_readline_handles_backspace_and_echo():
    shell, out, _, _ = make_shell()
    assert shell.readline("ab\bc\n") == "ac"
    assert out.getvalue() == "ab\bc\n"


def test_readline_ignores_control_and_limits_length():
    shell, _, _, _ = make_shell()
    assert shell.readline("a\x01b\n") == "ab"
    line = shell.readline("x" * (MAX_CMD_LEN + 10) + "\n")
    assert len(line) == MAX_CMD_LEN - 1


def test_readline_without_newline_raises():
    shell, _, _, _ = make_shell()
    with pytest.raises(EOFError):
        shell.readline("abc")


def test_unknown_command():
    shell, out, _, _ = make_shell()
    assert shell.execute(["frobnicate"]) is None
    assert out.getvalue() == "Command not found: frobnicate\n"


def test_echo_joins_arguments():
    shell, out, _, _ = make_shell()
    assert shell.run_line("echo hello   world") == 0
    assert out.getvalue() == "hello world\n"


def test_help_lists_every_command():
    shell, out, _, _ = make_shell()
    shell.cmd_help(["help"])
    lines = out.getvalue().splitlines()
    assert lines[0] == "Available commands:"
    assert "  help - Show this help message" in lines
    assert len(lines) - 1 == len(shell.commands)


def test_clear_writes_clear_sequence():
    shell, out, _, _ = make_shell()
    assert shell.cmd_clear(["clear"]) == 0
    assert out.getvalue() == CLEAR_SCREEN


def test_register_custom_command():
    shell, _, _, _ = make_shell()
    shell.register_command("seven", lambda argv: len(argv) + 5, "custom")
    assert shell.run_line("seven a b") == 8


def test_command_table_capacity():
    shell, _, _, _ = make_shell()
    for i in range(100):
        shell.register_command(f"c{i}", lambda argv: 0, "x")
    assert len(shell.commands) == 64


def test_resolve_path():
    shell, _, fs, _ = make_shell()
    assert shell.resolve_path("a") == "/a"
    fs.mkdir("/home")
    shell.cmd_cd(["cd", "home"])
    assert shell.resolve_path("a") == "/home/a"
    assert shell.resolve_path("/etc") == "/etc"


def test_mkdir_cd_pwd():
    shell, out, _, _ = make_shell()
    assert shell.run_line("mkdir docs") == 0
    assert shell.run_line("cd docs") == 0
    shell.run_line("pwd")
    assert out.getvalue() == "/docs\n"
    assert shell.current_dir == "/docs"


def test_cd_normalizes_double_slashes():
    shell, _, fs, _ = make_shell()
    fs.mkdir("/a")
    fs.mkdir("/a/b")
    assert shell.cmd_cd(["cd", "//a//b"]) == 0
    assert shell.current_dir == "/a/b"


def test_cd_errors():
    shell, out, fs, _ = make_shell()
    assert shell.cmd_cd(["cd"]) == 1
    assert out.getvalue() == "Usage: cd <directory>\n"
    fs.files["/f"] = b""
    assert shell.cmd_cd(["cd", "f"]) == 1
    assert shell.cmd_cd(["cd", "nope"]) == 1
    assert "cd: 'nope': No such directory\n" in out.getvalue()
    assert shell.current_dir == "/"


def test_mkdir_failure():
    shell, out, _, _ = make_shell()
    shell.cmd_mkdir(["mkdir", "x"])
    assert shell.cmd_mkdir(["mkdir", "x"]) == 1
    assert out.getvalue() == "mkdir: cannot create directory 'x'\n"


def test_ls_marks_directories():
    shell, out, fs, _ = make_shell()
    fs.mkdir("/bin")
    fs.files["/readme"] = b"hi"
    fs._new_inode("/readme")
    assert shell.cmd_ls(["ls"]) == 0
    assert out.getvalue() == "bin/  readme  \n"


def test_ls_skips_zero_inode():
    shell, out, fs, _ = make_shell()
    fs.mkdir("/d")
    fs.inodes["/d"] = 0
    shell.cmd_ls(["ls", "/"])
    assert out.getvalue() == "\n"


def test_ls_missing_directory():
    shell, out, _, _ = make_shell()
    assert shell.cmd_ls(["ls", "ghost"]) == 1
    assert out.getvalue() == "ls: cannot access '/ghost': No such file or directory\n"


def test_touch_cat_and_rm():
    shell, out, fs, _ = make_shell()
    assert shell.cmd_touch(["touch", "note"]) == 0
    assert fs.files["/note"] == b""
    fs.files["/note"] = b"contents"
    assert shell.cmd_cat(["cat", "note"]) == 0
    assert out.getvalue() == "contents\n"
    assert shell.cmd_rm(["rm", "note"]) == 0
    assert "/note" not in fs.files
    assert not fs.fds


def test_cat_and_rm_missing():
    shell, out, _, _ = make_shell()
    assert shell.cmd_cat(["cat", "x"]) == 1
    assert shell.cmd_rm(["rm", "x"]) == 1
    assert out.getvalue() == "cat: 'x': No such file\nrm: cannot remove 'x'\n"


def test_touch_in_missing_directory():
    shell, out, _, _ = make_shell()
    assert shell.cmd_touch(["touch", "/no/file"]) == 1
    assert out.getvalue() == "touch: cannot create file '/no/file'\n"


def test_ps_lists_live_processes():
    procs = [
        Process(1, 0, ProcessState.RUNNING),
        Process(2, 1, ProcessState.TERMINATED),
        Process(3, 1, ProcessState.BLOCKED),
    ]
    shell, out, _, _ = make_shell(processes=procs)
    shell.cmd_ps(["ps"])
    lines = out.getvalue().splitlines()
    assert lines[0] == "PID  STATE  PPID  COMMAND"
    assert lines[1] == "1   RUN     0   [kernel]"
    assert lines[2] == "3   BLK     1   [kernel]"
    assert len(lines) == 3


def test_kill_terminates_process():
    procs = [Process(5, 1, ProcessState.READY)]
    shell, out, _, _ = make_shell(processes=procs)
    assert shell.cmd_kill(["kill", "5"]) == 0
    assert procs[0].state == ProcessState.TERMINATED
    assert out.getvalue() == "Process 5 terminated\n"
    assert shell.cmd_kill(["kill", "5"]) == 1


def test_kill_non_numeric_is_zero():
    shell, out, _, _ = make_shell(processes=[Process(4)])
    assert shell.cmd_kill(["kill", "abc"]) == 1
    assert out.getvalue() == "Process not found: 0\n"


def test_reboot_and_halt_raise():
    shell, out, _, clock = make_shell()
    with pytest.raises(SystemReboot):
        shell.run_line("reboot")
    with pytest.raises(SystemHalt):
        shell.run_line("halt")
    assert clock.waits == [100, 100]
    assert out.getvalue() == "Rebooting system...\nHalting system...\n"


def test_meminfo():
    shell, out, _, _ = make_shell(meminfo=lambda: (100, 30, 2048))
    shell.cmd_meminfo(["meminfo"])
    lines = out.getvalue().splitlines()
    assert lines[1] == "Total frames: 100"
    assert lines[2] == "Used frames: 30"
    assert lines[3] == "Free frames: 70"
    assert lines[4] == "Kernel heap used: 2048 bytes"


def test_df():
    shell, out, _, _ = make_shell(disk_usage=lambda: (100, 40, 1024))
    shell.cmd_df(["df"])
    lines = out.getvalue().splitlines()
    assert lines[1] == "SolixFS       100K    60K    40K    /"


def test_mount_and_umount():
    shell, out, fs, _ = make_shell()
    fs.mkdir("/mnt")
    assert shell.cmd_mount(["mount", "hda", "/mnt"]) == 0
    assert fs.mounts == {"/mnt": "hda"}
    assert shell.cmd_umount(["umount", "/mnt"]) == 0
    assert out.getvalue() == "Mounted hda at /mnt\nUnmounted /mnt\n"


def test_mount_failures():
    shell, out, _, _ = make_shell()
    assert shell.cmd_mount(["mount", "hda"]) == 1
    assert shell.cmd_mount(["mount", "hda", "/nowhere"]) == 1
    assert shell.cmd_umount(["umount", "/nowhere"]) == 1
    assert out.getvalue() == (
        "Usage: mount <device> <mountpoint>\nMount failed\nUnmount failed\n"
    )


def test_system_tests_pass():
    shell, out, fs, _ = make_shell()
    assert shell.cmd_test(["test"]) == 0
    assert out.getvalue().splitlines() == [
        "Running system tests...",
        "[+] Memory allocation test passed",
        "[+] Filesystem test passed",
        "[+] Timer test passed",
        "System tests completed",
    ]
    assert "/test_file" not in fs.files
    assert all(c.stats.active == 0 for c in shell.allocator.caches)


def test_system_tests_timer_failure():
    shell, out, _, _ = make_shell(clock=FakeClock(advance=False))
    shell.cmd_test(["test"])
    assert "[-] Timer test failed\n" in out.getvalue()


def test_run_prints_banner_and_prompts():
    shell, out, _, _ = make_shell()
    shell.run(["echo hi", "", "mkdir d", "cd d"])
    assert out.getvalue() == BANNER + "solixos:/$ hi\n" + "solixos:/$ " * 3
    assert shell.current_dir == "/d"