#!/usr/bin/env python3
import curses
import psutil
import time
import os
import re
import pwd
import sys
import signal
import shutil
import logging
import termios
import unicodedata
import subprocess
import argparse  # Import argparse for command-line argument parsing
from collections import namedtuple

# =========================
# Defaults
# =========================
# Build-slot accounts are <prefix><number>, e.g. nixbld1 .. nixbld32
BUILD_USER_PREFIX = "nixbld"

# Shared temporary directory scanned when a build's environment is unreadable
TMP_DIR = "/tmp"

# Redraw interval in seconds
DEFAULT_DELAY = 0.5

# Granularity of the idle wait between keyboard polls
POLL_INTERVAL = 0.02

# Keys that end the refresh loop
QUIT_KEYS = ("q", "Q")

# Timeout for the external process listing
PS_TIMEOUT = 5

UNKNOWN_OUTPUT = "(unknown)"
SEPARATOR_LINE = "-" * 40

# Transient psutil failures: the process is gone, or not ours to inspect
PROCESS_ERRORS = (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess, ProcessLookupError)

LOG_FORMAT = '%(asctime)s - %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

# ============== TERMINAL CONTROL SEQUENCES ==============
CSI = "\x1b["

# auto_margin: the terminal wraps after writing the last column (terminfo "am")
TerminalCaps = namedtuple("TerminalCaps", ["home", "clear_eol", "clear_eos", "auto_margin"])

# Used when terminfo cannot be loaded (no TERM, not a tty)
ANSI_CAPS = TerminalCaps(home=f"{CSI}H", clear_eol=f"{CSI}K", clear_eos=f"{CSI}J", auto_margin=True)
# ========================================================

Config = namedtuple("Config", ["delay", "once", "prefix", "tmp_dir"])

# Help text for command-line arguments
CMD_HELP_TEXT = """
BuildWatch Command-Line Options:
--------------------------------

Usage:
  buildwatch [options]

Options:
  -h, --help            Show this help message and exit.
  -d, --delay SECONDS   Seconds between screen refreshes (default: 0.5).
  -1, --once            Draw the screen once and exit.
  --prefix NAME         Build user name prefix (default: nixbld).
  --tmp-dir PATH        Directory scanned for in-progress outputs (default: /tmp).
  --log-file PATH       Write a log to PATH (default: no log).
  --log-level LEVEL     Log level: DEBUG, INFO, WARNING, ERROR (default: INFO).

Keys:
  q                     Quit.
  any other key         Refresh now.

Example:
  buildwatch --delay 2
"""


class AccountDatabaseError(Exception):
    """The system account database could not be read."""


# Logging setup
def setup_logging(log_file=None, level="INFO"):
    """Log to a file when asked; never to the terminal we are drawing on."""
    if log_file:
        logging.basicConfig(
            filename=log_file,
            level=getattr(logging, level.upper()),
            format=LOG_FORMAT,
            datefmt=LOG_DATEFMT
        )
    else:
        logging.getLogger().addHandler(logging.NullHandler())


# -------------------
# BUILD USER DIRECTORY
# -------------------
def get_build_users(prefix=BUILD_USER_PREFIX):
    """
    Return account names of the form <prefix><number>, ordered by number.
    Raises AccountDatabaseError if the account database cannot be read.
    """
    pattern = re.compile(rf"^{re.escape(prefix)}(\d+)$")
    try:
        entries = pwd.getpwall()
    except (OSError, KeyError) as e:
        raise AccountDatabaseError(f"cannot read account database: {e}") from e

    matched = {}
    for entry in entries:
        m = pattern.match(entry.pw_name)
        if m:
            matched[entry.pw_name] = int(m.group(1))
    return sorted(matched, key=lambda name: (matched[name], name))


# ---------------
# PROCESS SAMPLER
# ---------------
def user_has_processes(user):
    """Presence test: does any running process belong to user?"""
    for proc in psutil.process_iter(['username']):
        try:
            if proc.info['username'] == user:
                return True
        except PROCESS_ERRORS:
            continue
    return False


def list_user_pids(user):
    """All PIDs owned by user, ascending, without duplicates."""
    pids = set()
    for proc in psutil.process_iter(['pid', 'username']):
        try:
            if proc.info['username'] == user:
                pids.add(proc.info['pid'])
        except PROCESS_ERRORS:
            continue
    return sorted(pids)


def sample_active_users(users):
    """
    Map each active user to its PID list, keeping the order of users.
    A user that passed the presence check but lists no PIDs has finished
    in between and is left out of this cycle.
    """
    active = {}
    for user in users:
        if not user_has_processes(user):
            continue
        pids = list_user_pids(user)
        if not pids:
            logging.debug(f"{user} went idle between presence check and listing")
            continue
        active[user] = pids
    return active


# ---------------------
# OUTPUT PATH RESOLVER
# ---------------------
def read_env_output(pid):
    """Value of $out in the environment of pid, or None."""
    try:
        env = psutil.Process(pid).environ()
    except (PROCESS_ERRORS + (OSError,)) as e:
        logging.debug(f"Cannot read environment of PID {pid}: {e}")
        return None
    return env.get("out") or None


def latest_tmp_entry(user, tmp_dir=TMP_DIR):
    """Name of the most recently modified entry in tmp_dir owned by user, or None."""
    try:
        uid = pwd.getpwnam(user).pw_uid
    except KeyError:
        return None

    entries = []
    try:
        with os.scandir(tmp_dir) as it:
            for entry in it:
                try:
                    st = entry.stat(follow_symlinks=False)
                except OSError:
                    continue
                if st.st_uid == uid:
                    entries.append((st.st_mtime, entry.name))
    except OSError as e:
        logging.debug(f"Cannot list {tmp_dir} for {user}: {e}")
        return None

    if not entries:
        return None
    # Oldest first; the last one is the build currently writing
    entries.sort()
    return entries[-1][1]


def resolve_output_path(user, pid, tmp_dir=TMP_DIR):
    """
    Best guess at what user's build is producing. Tries, in order:
      - the $out variable of the representative process,
      - the newest entry the user owns in tmp_dir,
      - UNKNOWN_OUTPUT.
    Always returns a string.
    """
    tiers = (
        ("environment", lambda: read_env_output(pid)),
        ("tmp dir", lambda: latest_tmp_entry(user, tmp_dir)),
    )
    for name, tier in tiers:
        try:
            result = tier()
        except Exception as e:
            logging.debug(f"Output lookup via {name} failed for {user} (PID {pid}): {e}")
            continue
        if result:
            return result
    return UNKNOWN_OUTPUT


# ---------------
# SCREEN COMPOSER
# ---------------
def get_process_table(pids):
    """Full-format thread listing for pids, as printed by ps."""
    if not pids:
        return ""
    try:
        result = subprocess.run(
            ["ps", "-Lf", "-p", ",".join(str(pid) for pid in pids)],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=PS_TIMEOUT,
            text=True
        )
    except FileNotFoundError:
        logging.warning("ps not found; process details unavailable")
        return ""
    except subprocess.TimeoutExpired:
        logging.warning(f"ps timed out listing PIDs {pids}")
        return ""
    # A non-zero status only means some PIDs already exited
    return result.stdout


def compose_screen(snapshot):
    """
    Build the screen for one cycle. snapshot maps user -> (output_path, pids),
    in display order. Returns a flat list of lines; clipping is left to the
    renderer.
    """
    lines = []
    for user, (output_path, pids) in snapshot.items():
        lines.append(f"{len(pids):>5}  {output_path}")

    lines.extend(["", SEPARATOR_LINE, ""])

    for user, (output_path, pids) in snapshot.items():
        lines.append(f"==> {user}: {output_path}")
        lines.extend(get_process_table(pids).splitlines())
    return lines


# -----------------
# TERMINAL RENDERER
# -----------------
def terminal_caps():
    """Cursor-home and clear sequences from terminfo, with ANSI fallbacks."""
    try:
        curses.setupterm()
    except (curses.error, OSError, ValueError):
        return ANSI_CAPS

    def cap(name, fallback):
        value = curses.tigetstr(name)
        return value.decode("latin-1") if value else fallback

    return TerminalCaps(
        home=cap("home", ANSI_CAPS.home),
        clear_eol=cap("el", ANSI_CAPS.clear_eol),
        clear_eos=cap("ed", ANSI_CAPS.clear_eos),
        auto_margin=curses.tigetflag("am") > 0,
    )


def get_terminal_geometry():
    """(width, height) of the terminal right now."""
    size = shutil.get_terminal_size()
    return size.columns, size.lines


def char_width(char):
    """Columns a character takes on the terminal."""
    if unicodedata.category(char) in ('Mn', 'Me'):
        return 0
    if unicodedata.east_asian_width(char) in ('W', 'F'):
        return 2
    return 1


def clean_line(line):
    """Expand tabs and replace other control characters with '?', like ps does."""
    return "".join(c if c.isprintable() else "?" for c in line.expandtabs())


def clip_to_width(text, width):
    used = 0
    for idx, char in enumerate(text):
        used += char_width(char)
        if used > width:
            return text[:idx]
    return text


def render_screen(lines, width, height, caps=ANSI_CAPS):
    """
    Overwrite the terminal in place: home the cursor, write at most height
    lines of at most width columns each, clearing the rest of every row, then
    clear everything below.
    """
    height = max(0, height)
    # With auto margins a full row leaves the cursor pending a wrap, where
    # clear_eol would erase the last character
    if caps.auto_margin:
        width -= 1
    width = max(0, width)
    rows = [clip_to_width(clean_line(line), width) + caps.clear_eol for line in lines[:height]]
    return caps.home + "\n".join(rows) + caps.clear_eos


def draw_screen(lines, caps=ANSI_CAPS):
    width, height = get_terminal_geometry()
    sys.stdout.write(render_screen(lines, width, height, caps))
    sys.stdout.flush()


# -------------
# INPUT WATCHER
# -------------
def read_key(fd):
    """
    Non-blocking read of one character from fd. Returns None when nothing is
    pending. Canonical mode and echo are off for the read only; signal keys
    keep working.
    """
    if not os.isatty(fd):
        return None
    try:
        old = termios.tcgetattr(fd)
    except termios.error:
        return None

    new = termios.tcgetattr(fd)
    new[3] &= ~(termios.ICANON | termios.ECHO)
    new[6][termios.VMIN] = 0
    new[6][termios.VTIME] = 0
    try:
        termios.tcsetattr(fd, termios.TCSANOW, new)
        data = os.read(fd, 1)
    except (OSError, termios.error):
        return None
    finally:
        try:
            termios.tcsetattr(fd, termios.TCSANOW, old)
        except termios.error:
            pass

    if not data:
        return None
    return data.decode("utf-8", errors="replace")


# ------------
# REFRESH LOOP
# ------------
def init_terminal(fd):
    """Turn off echo for the lifetime of the loop; returns the saved settings."""
    if not os.isatty(fd):
        return None
    try:
        saved = termios.tcgetattr(fd)
        quiet = termios.tcgetattr(fd)
        quiet[3] &= ~termios.ECHO
        termios.tcsetattr(fd, termios.TCSADRAIN, quiet)
    except termios.error as e:
        logging.warning(f"Cannot turn off terminal echo: {e}")
        return None
    return saved


def close_terminal(fd, saved):
    if saved is None:
        return
    try:
        termios.tcsetattr(fd, termios.TCSADRAIN, saved)
    except termios.error as e:
        logging.warning(f"Failed to restore terminal settings: {e}")


def handle_sigterm(signum, frame):
    # Take the same way out as Ctrl-C
    raise KeyboardInterrupt


def input_fd():
    try:
        return sys.stdin.fileno()
    except (AttributeError, ValueError, OSError):
        return -1


def run_cycle(config, caps=ANSI_CAPS):
    """Sample, resolve, compose and draw one screen."""
    start_time = time.time()
    users = get_build_users(config.prefix)
    snapshot = {}
    for user, pids in sample_active_users(users).items():
        # The lowest PID is taken to be the build's root process
        snapshot[user] = (resolve_output_path(user, pids[0], config.tmp_dir), pids)
    draw_screen(compose_screen(snapshot), caps)
    logging.debug(
        f"Cycle: {len(snapshot)}/{len(users)} build users active "
        f"in {time.time() - start_time:.3f}s"
    )


def refresh_loop(delay, fd, cycle, clock=time.monotonic, sleep=time.sleep):
    """
    Call cycle every delay seconds until a quit key is read from fd.
    Any other key redraws immediately and restarts the wait.
    """
    deadline = clock() + delay
    while True:
        key = read_key(fd)
        if key in QUIT_KEYS:
            logging.info("Quit key pressed")
            return
        if key is not None or clock() >= deadline:
            cycle()
            deadline = clock() + delay
            continue
        sleep(POLL_INTERVAL)


# Run the monitor
def main(argv=None):
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument('-d', '--delay', type=float, default=DEFAULT_DELAY, help='Seconds between refreshes.')
    parser.add_argument('-1', '--once', action='store_true', help='Draw once and exit.')
    parser.add_argument('--prefix', default=BUILD_USER_PREFIX, help='Build user name prefix.')
    parser.add_argument('--tmp-dir', default=TMP_DIR, help='Directory scanned for in-progress outputs.')
    parser.add_argument('--log-file', help='Write a log to this file.')
    parser.add_argument('--log-level', default='INFO', help='Log level.')
    parser.add_argument('-h', '--help', action='store_true', help='Show help message and exit.')
    args = parser.parse_args(argv)

    if args.help:
        print(CMD_HELP_TEXT)
        return 0

    if not args.delay > 0:
        print("Error: delay must be a positive number of seconds.")
        return 1

    if args.log_level.upper() not in LOG_LEVELS:
        print(f"Error: log level must be one of {', '.join(LOG_LEVELS)}.")
        return 1

    try:
        setup_logging(args.log_file, args.log_level)
    except OSError as e:
        print(f"Error: cannot open log file: {e}")
        return 1

    config = Config(delay=args.delay, once=args.once, prefix=args.prefix, tmp_dir=args.tmp_dir)

    # Everything depends on the account database; fail now if it is unreadable
    try:
        users = get_build_users(config.prefix)
    except AccountDatabaseError as e:
        print(f"Error: {e}")
        return 1
    logging.info(f"BuildWatch started: {len(users)} build users, delay {config.delay}s")

    caps = terminal_caps()

    if config.once:
        try:
            run_cycle(config, caps)
        except KeyboardInterrupt:
            pass
        except AccountDatabaseError as e:
            print(f"\nError: {e}")
            return 1
        print()
        return 0

    fd = input_fd()
    previous_sigterm = signal.signal(signal.SIGTERM, handle_sigterm)
    saved = None
    error = None
    try:
        saved = init_terminal(fd)
        refresh_loop(config.delay, fd, lambda: run_cycle(config, caps))
    except KeyboardInterrupt:
        logging.info("Interrupted")
    except AccountDatabaseError as e:
        error = e
    finally:
        close_terminal(fd, saved)
        signal.signal(signal.SIGTERM, previous_sigterm)

    print()
    if error is not None:
        print(f"Error: {error}")
        return 1
    logging.info("BuildWatch stopped")
    return 0


if __name__ == '__main__':
    sys.exit(main())
