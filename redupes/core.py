# redupes/core.py
#
# DESIGN RATIONALE:
# Deduplication tools that emit Interix-style markers (IntxLNK) leave small files
# behind whose only content is the path of the "real" copy. This module finds those
# markers and puts the original bytes back in their place.
#
# Key design decisions:
# - A marker is only replaced after the full content has been staged next to it.
# - The staged copy is committed with a rename; the marker is never deleted first.
# - The marker bytes are kept as a backup in the temp directory.
# - One bad record never stops the run; every record gets its own result row.
# - No shell commands or external tools are used; everything is pure Python.

import os
import hashlib
from collections import namedtuple
from concurrent.futures import ThreadPoolExecutor
from stat import S_ISREG

SAFE_SUFFIX_PADDING = 5
MARKER_SIGNATURE = b"IntxLNK"
MARKER_DELIMITER = ":" + MARKER_SIGNATURE.decode("ascii")
STAGING_SUFFIX = "_copy"
DEFAULT_MAX_SIZE = 1000
PROGRESS_EVERY = 500

RESTORED = "RESTORED"
MISSING = "MISSING"
ERROR = "ERROR"
SKIPPED = "SKIPPED"
DRYRUN = "DRYRUN"

MarkerRecord = namedtuple("MarkerRecord", ["marker_path", "target_path"])
RestoreResult = namedtuple(
    "RestoreResult",
    ["marker_path", "target_path", "action", "backup_path", "size", "digest", "error"],
    defaults=("", 0, "", ""),
)


class MarkerParseError(ValueError):
    """A scanner line that does not describe a marker."""


def hash_file(path, algorithm="md5", chunk_size=8192):
    """Compute a hash digest of a file (default: MD5)."""
    h = hashlib.new(algorithm)
    with open(path, "rb") as f:
        while chunk := f.read(chunk_size):
            h.update(chunk)
    return h.hexdigest()


def display_path(path):
    """Printable form of a path; undecodable filename bytes are shown as \\xNN escapes."""
    return os.fsencode(path).decode("utf-8", "backslashreplace")


def decode_marker_payload(payload):
    """
    Turn the bytes following the signature into a path string.
    Payloads with NUL bytes are UTF-16LE, anything else is taken as a plain
    filesystem-encoded path.
    """
    if payload.startswith(b"\x01"):
        payload = payload[1:]
    if b"\x00" in payload:
        if len(payload) % 2:
            payload = payload[:-1]
        text = payload.decode("utf-16-le", errors="surrogatepass")
    else:
        text = os.fsdecode(payload)
    text = text.split("\n", 1)[0]
    return text.rstrip("\x00\r")


def read_marker(path):
    """
    Return the scanner line for path, or None if the file is not a marker.
    Raises OSError when the file cannot be read.
    """
    with open(path, "rb") as f:
        data = f.read()
    if not data.startswith(MARKER_SIGNATURE):
        return None
    target = decode_marker_payload(data[len(MARKER_SIGNATURE):])
    return f"{path}{MARKER_DELIMITER}{target}"


def iter_candidates(root, max_size=DEFAULT_MAX_SIZE):
    """Yield regular files under root that are smaller than max_size bytes."""
    def on_error(e):
        print(f"[WARN] Could not list {display_path(e.filename)}: {e.strerror}")

    for dirpath, _dirnames, filenames in os.walk(root, onerror=on_error):
        for name in filenames:
            path = os.path.join(dirpath, name)
            try:
                st = os.lstat(path)
            except OSError as e:
                print(f"[WARN] Could not stat {display_path(path)}: {e}")
                continue
            if not S_ISREG(st.st_mode):
                continue
            if st.st_size < max_size:
                yield path


class MarkerScanner:
    """
    Walk a directory tree and produce one scanner line per marker file.
    Candidate files are read on a thread pool; lines come out in discovery order.
    """

    def __init__(self, root, max_size=DEFAULT_MAX_SIZE, threads=1):
        self.root = root
        self.max_size = max_size
        self.threads = max(1, threads)
        self.candidates = 0
        self.unreadable = 0
        self.found = 0

    @staticmethod
    def _read(path):
        try:
            return path, read_marker(path), None
        except OSError as e:
            return path, None, e

    def scan(self):
        candidates = list(iter_candidates(self.root, self.max_size))
        self.candidates = len(candidates)
        with ThreadPoolExecutor(max_workers=self.threads) as pool:
            for path, line, error in pool.map(self._read, candidates):
                if error is not None:
                    print(f"[WARN] Could not read {display_path(path)}: {error}")
                    self.unreadable += 1
                elif line is not None:
                    self.found += 1
                    yield line


def parse_marker_line(line):
    """
    Split a scanner line into (marker_path, target_path).
    Raises MarkerParseError if the delimiter is missing or a side is empty.
    """
    index = line.find(MARKER_DELIMITER)
    if index < 0:
        raise MarkerParseError(f"missing {MARKER_DELIMITER!r} delimiter: {line!r}")
    marker_path = line[:index]
    target_path = line[index + len(MARKER_DELIMITER):]
    if not marker_path or not target_path:
        raise MarkerParseError(f"empty path in marker line: {line!r}")
    return MarkerRecord(marker_path, target_path)


def rewrite_target(path, rule=None):
    """Replace the first occurrence of rule's search prefix in path, if any."""
    if rule is None:
        return path
    search, replace = rule
    if search not in path:
        return path
    return path.replace(search, replace, 1)


def generate_safe_path(dst_dir, original_name):
    """
    Generate a collision-safe path in dst_dir based on original_name,
    adding -00001, -00002, etc. if needed.
    """
    candidate = os.path.join(dst_dir, original_name)
    count = 1
    stem, suffix = os.path.splitext(original_name)
    while os.path.lexists(candidate):
        numbered = f"{stem}-{str(count).zfill(SAFE_SUFFIX_PADDING)}{suffix}"
        candidate = os.path.join(dst_dir, numbered)
        count += 1
    return candidate


def copy_stream(src, dst, mode="xb", chunk_size=8192):
    """
    Copy src to dst in chunks and fsync. Returns the number of bytes written.
    dst is created exclusively; a partially written dst is removed again.
    """
    written = 0
    with open(src, "rb") as fsrc:
        fdst = open(dst, mode)
        try:
            with fdst:
                while chunk := fsrc.read(chunk_size):
                    fdst.write(chunk)
                    written += len(chunk)
                fdst.flush()
                os.fsync(fdst.fileno())
        except OSError:
            discard(dst)
            raise
    return written


def restore_marker(target_path, marker_path, temp_dir, verify_hash=False):
    """
    Replace the marker at marker_path with the content of target_path.

    The content is staged as <marker_path>_copy and renamed over the marker;
    the old marker bytes are kept in temp_dir. On any failure the marker is
    left as it was and the staging and backup files this call created are
    removed. An existing file at the staging path is never touched.
    """
    if not os.path.exists(target_path):
        return RestoreResult(marker_path, target_path, MISSING,
                             error="Target does not exist")

    staging = marker_path + STAGING_SUFFIX
    staged = ""
    backup = ""
    digest = ""
    try:
        stat = os.stat(target_path)
        written = copy_stream(target_path, staging)
        staged = staging
        if written != stat.st_size:
            raise OSError(f"Short copy: {written} of {stat.st_size} bytes")
        os.chmod(staging, stat.st_mode)
        os.utime(staging, (stat.st_atime, stat.st_mtime))

        if verify_hash:
            digest = hash_file(target_path)
            if digest != hash_file(staging):
                raise OSError("Hash mismatch after copy")

        candidate = generate_safe_path(temp_dir, os.path.basename(marker_path))
        copy_stream(marker_path, candidate)
        backup = candidate

        os.replace(staging, marker_path)
        return RestoreResult(marker_path, target_path, RESTORED, backup,
                             stat.st_size, digest)
    except OSError as e:
        if staged:
            discard(staged)
        if backup:
            discard(backup)
        return RestoreResult(marker_path, target_path, ERROR, error=str(e))


def discard(path):
    """Best-effort removal of a leftover staging or backup file."""
    try:
        if os.path.lexists(path):
            os.unlink(path)
    except OSError as e:
        print(f"[WARN] Could not remove {display_path(path)}: {e}")


def preview_restore(target_path, marker_path, temp_dir):
    """Dry-run counterpart of restore_marker; touches nothing."""
    if not os.path.exists(target_path):
        return RestoreResult(marker_path, target_path, MISSING,
                             error="Target does not exist")
    backup = generate_safe_path(temp_dir, os.path.basename(marker_path))
    return RestoreResult(marker_path, target_path, DRYRUN, backup,
                         os.path.getsize(target_path))


def process_lines(lines, temp_dir, rule=None, wet=False, verify_hash=False, verbose=False):
    """
    Run every scanner line through parse -> rewrite -> restore.
    Yields one RestoreResult per line; a failing line never stops the run.
    """
    for i, line in enumerate(lines, 1):
        try:
            record = parse_marker_line(line)
        except MarkerParseError as e:
            print(f"[WARN] Skipping line {i}: {e}")
            yield RestoreResult("", "", SKIPPED, error=str(e))
            continue

        target = rewrite_target(record.target_path, rule)
        if wet:
            result = restore_marker(target, record.marker_path, temp_dir, verify_hash)
        else:
            result = preview_restore(target, record.marker_path, temp_dir)

        if result.action == ERROR:
            print(f"[WARN] Could not restore {display_path(result.marker_path)}: {result.error}")
        elif verbose:
            print(f"  - {result.action} {display_path(result.marker_path)} <- {display_path(result.target_path)}")
        if i % PROGRESS_EVERY == 0:
            print(f"  - Processed {i} markers...")
        yield result


def human_readable_size(size):
    """Convert byte size to human-readable format."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if size < 1024:
            return f"{size:.2f} {unit}"
        size /= 1024
    return f"{size:.2f} PB"
