"""Output cleanup and pagination for chat delivery."""

import codecs
import re

# Telegram's max message size
MAX_MESSAGE_BYTES = 4096

# A line ends at "\n" only; other Unicode line breaks stay inside the line
LINE_RE = re.compile(r'[^\n]*\n|[^\n]+\Z')

# Escape sequence cut off at the end of a read: bare ESC, CSI without its
# final byte, OSC without BEL, or charset selection without a designator
INCOMPLETE_ESCAPE_RE = re.compile(r'\x1b(?:\[[0-9;?]*|\][^\x07\x1b]*|[\(\)])?\Z')

# Longer unterminated sequences are treated as garbage and let through
MAX_PENDING_ESCAPE = 256

# Regex to match ANSI escape codes (comprehensive)
ANSI_ESCAPE_RE = re.compile(
    r'\x1b\[[0-9;?]*[a-zA-Z]|'  # CSI sequences (including private modes like ?2004h)
    r'\x1b\][^\x07]*\x07|'       # OSC sequences (title, etc.)
    r'\x1b[PX^_].*?\x1b\\|'      # DCS, SOS, PM, APC sequences
    r'\x1b[\(\)][AB012]|'        # Character set selection
    r'\x1b[=>]|'                 # Keypad modes
    r'\x1b[78]|'                 # Save/restore cursor
    r'\x1b[DMEHc]|'              # Various single-char commands
    r'[\x00-\x08\x0b\x0c\x0e-\x1f]'  # Other control characters
)


def strip_ansi(text: str) -> str:
    """Remove ANSI escape codes and control characters from text."""
    text = ANSI_ESCAPE_RE.sub('', text)
    # Second pass: remove any remaining escape sequences we might have missed
    return re.sub(r'\x1b[^a-zA-Z]*[a-zA-Z]', '', text)


def clean_output(text: str) -> str:
    """Make raw pty output fit for a chat message.

    The pty translates newlines to CRLF, so line endings are normalized
    after escape sequences are gone.
    """
    text = strip_ansi(text)
    return text.replace('\r\n', '\n').replace('\r', '\n')


class OutputDecoder:
    """
    Turns a stream of raw pty reads into cleaned text.

    Reads end at arbitrary byte offsets, so a UTF-8 character, a CRLF pair
    or an escape sequence can be split between two reads. Incomplete
    characters stay in the incremental decoder; a trailing "\\r" or a
    partial escape sequence is held back until the next feed().
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        self._pending = ''

    def feed(self, data: bytes) -> str:
        """Decode and clean one read; may return less than was fed."""
        text = self._pending + self._decoder.decode(data)
        self._pending = ''

        match = INCOMPLETE_ESCAPE_RE.search(text)
        if match and len(match.group()) <= MAX_PENDING_ESCAPE:
            self._pending = match.group()
            text = text[:match.start()]
        elif text.endswith('\r'):
            self._pending = '\r'
            text = text[:-1]

        return clean_output(text)

    def flush(self) -> str:
        """Return whatever is still held back; call once the stream has ended."""
        text = self._pending + self._decoder.decode(b'', final=True)
        self._pending = ''
        return clean_output(text)


def paginate(text: str, limit: int = MAX_MESSAGE_BYTES) -> list[str]:
    """
    Split text into chunks of at most `limit` UTF-8 bytes.

    Chunks only break between lines, and line endings are kept, so joining
    the chunks gives back the input. A single line longer than `limit`
    ends up in a chunk of its own, unsplit.

    Args:
        text: Text to split
        limit: Maximum chunk size in bytes

    Returns:
        Ordered list of chunks; the last chunk is always present
    """
    pages: list[str] = []
    current: list[str] = []
    size = 0

    for line in LINE_RE.findall(text):
        line_size = len(line.encode('utf-8'))
        if current and size + line_size > limit:
            pages.append(''.join(current))
            current = []
            size = 0
        current.append(line)
        size += line_size

    pages.append(''.join(current))
    return pages
