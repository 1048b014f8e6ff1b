"""Named key to terminal byte sequence mapping."""

from __future__ import annotations

KEY_SEQUENCES: dict[str, bytes] = {
    # Arrow keys
    "up": b"\x1b[A",
    "down": b"\x1b[B",
    "right": b"\x1b[C",
    "left": b"\x1b[D",
    # Function keys
    "f1": b"\x1bOP",
    "f2": b"\x1bOQ",
    "f3": b"\x1bOR",
    "f4": b"\x1bOS",
    "f5": b"\x1b[15~",
    "f6": b"\x1b[17~",
    "f7": b"\x1b[18~",
    "f8": b"\x1b[19~",
    "f9": b"\x1b[20~",
    "f10": b"\x1b[21~",
    "f11": b"\x1b[23~",
    "f12": b"\x1b[24~",
    # Editing and navigation
    "enter": b"\r",
    "return": b"\r",
    "tab": b"\t",
    "backspace": b"\x7f",
    "delete": b"\x1b[3~",
    "insert": b"\x1b[2~",
    "escape": b"\x1b",
    "esc": b"\x1b",
    "home": b"\x1b[H",
    "end": b"\x1b[F",
    "pageup": b"\x1b[5~",
    "pagedown": b"\x1b[6~",
    # Control chords
    "ctrl+a": b"\x01",
    "ctrl+c": b"\x03",
    "ctrl+d": b"\x04",
    "ctrl+e": b"\x05",
    "ctrl+k": b"\x0b",
    "ctrl+l": b"\x0c",
    "ctrl+u": b"\x15",
    "ctrl+w": b"\x17",
    "ctrl+z": b"\x1a",
    # Alt chords
    "alt+b": b"\x1bb",
    "alt+d": b"\x1bd",
    "alt+f": b"\x1bf",
    # Special
    "space": b" ",
    "clear": b"\x1b[2J\x1b[H",
}


def key_sequence(key: str) -> bytes:
    """Resolve a key name to the bytes written to the PTY.

    Lookup is case-insensitive. ``ctrl+<letter>`` chords outside the table
    are computed; any other unknown name is sent literally.
    """

    name = key.lower()
    sequence = KEY_SEQUENCES.get(name)
    if sequence is not None:
        return sequence

    if name.startswith("ctrl+") and len(name) == 6 and "a" <= name[5] <= "z":
        return bytes([ord(name[5]) - ord("a") + 1])
    if name.startswith("alt+") and len(name) == 5:
        return b"\x1b" + key[4].encode("utf-8")
    return key.encode("utf-8")


def describe_sequence(sequence: bytes) -> str:
    """Printable form of a key sequence for log lines."""
    text = sequence.decode("utf-8", errors="replace")
    return text.replace("\x1b", "^[").replace("\r", "\\r").replace("\n", "\\n")
