#!/usr/bin/env python3
"""
QR Stream - Move arbitrary data through QR codes (or plain text lines) and back

This tool encodes bytes into one or more QR codes, tiled into a single PNG image,
or into framed text lines. It can decode such images or text back into the
original bytes. Data can optionally be encrypted with AES-256-GCM so the QR codes
are unreadable without the shared key.

REQUIREMENTS:
  Python 3.8+

  Install with:
    pip install .

  System dependencies (for pyzbar):
    - Linux: sudo apt-get install libzbar0
    - macOS: brew install zbar
    - Windows: Download from http://zbar.sourceforge.net/

USAGE:
  Encode stdin into a PNG:
    echo "Hello World" | python qrstream.py encode > hello.png

  Encode a file into text lines, encrypted with a password:
    python qrstream.py -i secret.txt -p prompt encode -o txt

  Decode a PNG or text lines:
    python qrstream.py -i hello.png decode

  Decode by scanning the codes with a camera in the browser:
    python qrstream.py -i camera decode

For detailed help on each command:
    python qrstream.py encode --help
    python qrstream.py decode --help
    python qrstream.py show-key --help
"""

import sys
import os
import io
import math
import base64
import binascii
import json
import queue
import re
import threading
import webbrowser
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import click
import qrcode
from qrcode.constants import ERROR_CORRECT_L, ERROR_CORRECT_M, ERROR_CORRECT_Q, ERROR_CORRECT_H
from qrcode.exceptions import DataOverflowError
from PIL import Image
from pyzbar import pyzbar
import cv2
import numpy as np
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

# Version and format constants
VERSION = "1.0.0"
QRSTREAM_MAGIC = "QRST"
QRSTREAM_VERSION = 1

# The part header packs index and count into one byte, one nibble each
MAX_PARTS = 16

KEY_SIZE = 32  # AES-256
NONCE_SIZE = 12  # 96 bits (recommended for GCM)
PBKDF2_ITERATIONS = 600_000

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"

# Image layout
IMAGE_SPACING = 64
MIN_PIXELS_PER_MODULE = 4
TARGET_SYMBOL_PIXELS = 360

# QR Code error correction mapping
ERROR_CORRECTION_LEVELS = {
    'L': ERROR_CORRECT_L,  # ~7% error correction
    'M': ERROR_CORRECT_M,  # ~15% error correction
    'Q': ERROR_CORRECT_Q,  # ~25% error correction (default)
    'H': ERROR_CORRECT_H,  # ~30% error correction
}

OUTPUT_FORMATS = ('png', 'txt')


# ============================================================================
# ERRORS
# ============================================================================

class QRStreamError(Exception):
    """Base class for all errors raised by qrstream."""


class InvalidInputError(QRStreamError, ValueError):
    """Input could not be read as qrstream data.

    Decryption failures are reported with this error too, with the same
    generic message, so a wrong key looks exactly like corrupted input.
    """

    def __init__(self, message: str = "invalid input"):
        super().__init__(message)


class ValueValidationError(QRStreamError, ValueError):
    """A value was well-formed but not acceptable (version, part info, option)."""


class DataTooLargeError(QRStreamError):
    """Data does not fit into MAX_PARTS QR codes at the requested error correction."""


# ============================================================================
# ENCRYPTION FUNCTIONS (AES-256-GCM)
# ============================================================================

def derive_key(password: str, salt: bytes = QRSTREAM_MAGIC.encode('utf-8'),
               iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """Derive a 32-byte encryption key from a password using PBKDF2-HMAC-SHA256.

    The salt is fixed and public (the protocol magic) so that both ends derive
    the same key from the same password without exchanging anything else.

    Args:
        password: User password (string)
        salt: Salt bytes (default: the protocol magic)
        iterations: PBKDF2 iteration count (default: 600,000)

    Returns:
        32-byte derived key for AES-256
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode('utf-8'))


def _check_key(key: bytes) -> None:
    if len(key) != KEY_SIZE:
        raise ValueValidationError(f"key must be {KEY_SIZE} bytes, got {len(key)}")


def encrypt_data(data: bytes, key: bytes) -> bytes:
    """Encrypt data with AES-256-GCM authenticated encryption.

    Output layout: [Control:1][Nonce:N][Ciphertext+Tag]

    The low 5 bits of the control byte hold the nonce length. The high 3 bits
    are random so the payload does not start with a fixed byte.

    Args:
        data: Plaintext bytes
        key: 32-byte key

    Returns:
        Encrypted payload including nonce and authentication tag
    """
    _check_key(key)

    nonce = os.urandom(NONCE_SIZE)
    control = (os.urandom(1)[0] & 0xe0) | (len(nonce) & 0x1f)

    aesgcm = AESGCM(key)
    ciphertext = aesgcm.encrypt(nonce, data, None)  # No additional associated data

    return bytes([control]) + nonce + ciphertext


def decrypt_data(payload: bytes, key: bytes) -> bytes:
    """Decrypt a payload produced by encrypt_data().

    Only the nonce length bits of the control byte are used. Every failure
    (bad tag, wrong key, truncated payload, bad nonce length) raises the same
    InvalidInputError.

    Args:
        payload: Encrypted payload
        key: 32-byte key

    Returns:
        Decrypted plaintext

    Raises:
        InvalidInputError: If the payload cannot be authenticated
    """
    _check_key(key)

    if not payload:
        raise InvalidInputError()

    nonce_len = payload[0] & 0x1f
    if len(payload) < 1 + nonce_len:
        raise InvalidInputError()

    nonce = payload[1:1 + nonce_len]
    aesgcm = AESGCM(key)
    try:
        return aesgcm.decrypt(nonce, payload[1 + nonce_len:], None)
    except (InvalidTag, ValueError):
        raise InvalidInputError() from None


# ============================================================================
# TEXT CODEC (base64url without padding)
# ============================================================================

_B64URL_RE = re.compile(r'[A-Za-z0-9_-]*')


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode('ascii').rstrip('=')


def b64url_decode(text: str) -> bytes:
    """Decode unpadded base64url text.

    Raises:
        InvalidInputError: On characters outside the alphabet, padding,
            impossible lengths, or non-zero trailing bits
    """
    if not _B64URL_RE.fullmatch(text) or len(text) % 4 == 1:
        raise InvalidInputError()

    try:
        data = base64.urlsafe_b64decode(text + '=' * (-len(text) % 4))
    except (binascii.Error, ValueError):
        raise InvalidInputError() from None

    # Reject texts whose unused trailing bits are set
    if b64url_encode(data) != text:
        raise InvalidInputError()

    return data


# ============================================================================
# FRAME PROTOCOL
# ============================================================================

_VERSION_RE = re.compile(r'[0-9]+')
_HEX_BYTE_RE = re.compile(r'[0-9a-fA-F]{1,2}')


def pack_part_info(part_index: int, part_count: int) -> int:
    """Pack a 0-based part index and a part count into one byte.

    High nibble is part_index + 1, low nibble is part_count. The value 16
    does not fit a nibble and is written as 0.

    Example:
        >>> pack_part_info(0, 1)
        17
        >>> '%02x' % pack_part_info(15, 16)
        '00'
    """
    if not 1 <= part_count <= MAX_PARTS or not 0 <= part_index < part_count:
        raise ValueValidationError("invalid part information")
    return (((part_index + 1) & 0x0f) << 4) | (part_count & 0x0f)


def unpack_part_info(value: int) -> Tuple[int, int]:
    """Inverse of pack_part_info(). Returns (part_index, part_count)."""
    part_number = (value >> 4) or MAX_PARTS
    part_count = (value & 0x0f) or MAX_PARTS
    if part_number > part_count:
        raise ValueValidationError("invalid part information")
    return part_number - 1, part_count


def format_frame(text: str, part_index: int, part_count: int) -> str:
    """Build one framed line: <MAGIC>/<VERSION>;p=<HEX2>;t=<TEXT>"""
    part_info = pack_part_info(part_index, part_count)
    return f"{QRSTREAM_MAGIC}/{QRSTREAM_VERSION};p={part_info:02x};t={text}"


def parse_frame(line: str) -> Optional[Dict[str, Any]]:
    """Parse one framed line.

    Lines that do not start with the magic are not part of the protocol and
    yield None. Lines that do start with it must be well-formed.

    Fields after the version may come in any order. When there are several
    p= fields, the last one is used. t= must be the final field.

    Args:
        line: A single line of text

    Returns:
        Dictionary with magic, version, part_index, part_count and text,
        or None if the line does not carry the magic

    Raises:
        InvalidInputError: If the frame syntax is broken (no ';', no p= or t=)
        ValueValidationError: If the version or part information is invalid
    """
    if not line.startswith(QRSTREAM_MAGIC):
        return None

    sep = line.find(';')
    if sep < 0:
        raise InvalidInputError()

    version_str = line[len(QRSTREAM_MAGIC) + 1:sep]
    if not _VERSION_RE.fullmatch(version_str):
        raise ValueValidationError("invalid version str")
    version = int(version_str)
    if version > QRSTREAM_VERSION:
        raise ValueValidationError("unsupported version")

    part_info = None
    text = None
    for field in line[sep + 1:].split(';'):
        if field.startswith('t='):
            text = field[2:]
        elif field.startswith('p='):
            if not _HEX_BYTE_RE.fullmatch(field[2:]):
                raise ValueValidationError("invalid part information")
            part_info = unpack_part_info(int(field[2:], 16))

    if part_info is None or text is None:
        raise InvalidInputError()

    part_index, part_count = part_info
    return {
        'magic': QRSTREAM_MAGIC,
        'version': version,
        'part_index': part_index,
        'part_count': part_count,
        'text': text,
    }


# ============================================================================
# QR CODE FUNCTIONS
# ============================================================================

def parse_ec_level(token: str) -> str:
    """Normalize an error correction token to one of L, M, Q, H."""
    level = token.strip().upper()
    if level not in ERROR_CORRECTION_LEVELS:
        raise ValueValidationError(f"invalid ec-level {token}")
    return level


def create_qr_code(text: str, error_correction: str = 'Q') -> qrcode.QRCode:
    """Build the smallest QR code holding text at the given error correction.

    The code has no quiet zone; the image layout adds the spacing.

    Raises:
        DataOverflowError: If text does not fit even the largest QR version
    """
    qr = qrcode.QRCode(
        version=None,
        error_correction=ERROR_CORRECTION_LEVELS[parse_ec_level(error_correction)],
        box_size=1,
        border=0,
    )
    qr.add_data(text)
    try:
        qr.make(fit=True)
    except ValueError:
        # best_fit() sets version 41 before its own overflow check, and the
        # version setter rejects it with a plain ValueError
        raise DataOverflowError(f"{len(text)} characters exceed QR version 40") from None
    return qr


def split_into_parts(text: str, error_correction: str = 'Q') -> List[Tuple[str, qrcode.QRCode]]:
    """Split encoded text into the fewest framed parts that each fit one QR code.

    For each candidate count, starting at 1, the text is cut into contiguous
    slices of ceil(len / count) characters (the last slice may be shorter).
    Only the first slice is tried against the QR capacity; when it fits, the
    remaining slices are framed and encoded as well.

    Args:
        text: Full base64url text
        error_correction: Error correction level ('L', 'M', 'Q', 'H')

    Returns:
        List of (framed line, QR code) tuples in part order

    Raises:
        DataTooLargeError: If more than MAX_PARTS parts would be needed
    """
    for parts_needed in range(1, MAX_PARTS + 1):
        part_len = math.ceil(len(text) / parts_needed)
        line = format_frame(text[:part_len], 0, parts_needed)
        try:
            qr = create_qr_code(line, error_correction)
        except DataOverflowError:
            continue

        parts = [(line, qr)]
        for part_index in range(1, parts_needed):
            chunk = text[part_index * part_len:(part_index + 1) * part_len]
            line = format_frame(chunk, part_index, parts_needed)
            parts.append((line, create_qr_code(line, error_correction)))
        return parts

    raise DataTooLargeError("data too large to encode")


def pixels_per_module(modules_count: int) -> int:
    """Scale so that small and large QR codes render at a similar size."""
    return max(MIN_PIXELS_PER_MODULE, TARGET_SYMBOL_PIXELS // modules_count)


def qr_to_array(qr: qrcode.QRCode) -> np.ndarray:
    """Render a QR code as a grayscale array (dark=0, light=255)."""
    matrix = np.array(qr.get_matrix(), dtype=bool)
    scale = pixels_per_module(len(matrix))
    pixels = np.where(matrix, 0, 255).astype(np.uint8)
    return np.repeat(np.repeat(pixels, scale, axis=0), scale, axis=1)


def generate_png(qrs: List[qrcode.QRCode], qr_per_row: int = 1) -> bytes:
    """Tile QR codes into a single grayscale PNG image.

    Codes are laid out row-major, qr_per_row per row, each in a square cell
    as large as the largest rendered code. Cells are separated from each
    other and from the image edge by IMAGE_SPACING white pixels.

    Args:
        qrs: QR codes in part order
        qr_per_row: Number of codes per row

    Returns:
        PNG file contents
    """
    if qr_per_row < 1:
        raise ValueValidationError("qr-per-row must be at least 1")
    if not qrs:
        raise ValueValidationError("no QR codes to render")

    images = [qr_to_array(qr) for qr in qrs]
    cell = max(img.shape[0] for img in images)
    cols = min(qr_per_row, len(images))
    rows = math.ceil(len(images) / qr_per_row)

    width = IMAGE_SPACING + cols * (cell + IMAGE_SPACING)
    height = IMAGE_SPACING + rows * (cell + IMAGE_SPACING)
    canvas = np.full((height, width), 255, dtype=np.uint8)

    for idx, img in enumerate(images):
        row, col = divmod(idx, qr_per_row)
        x = IMAGE_SPACING + col * (cell + IMAGE_SPACING)
        y = IMAGE_SPACING + row * (cell + IMAGE_SPACING)
        canvas[y:y + img.shape[0], x:x + img.shape[1]] = img

    buffer = io.BytesIO()
    Image.fromarray(canvas).save(buffer, format='PNG')
    return buffer.getvalue()


def decode_qr_codes_from_png(png_data: bytes) -> List[str]:
    """Find and decode all QR codes in a PNG image.

    Args:
        png_data: PNG file contents

    Returns:
        Decoded text of each QR code found

    Raises:
        InvalidInputError: If the image cannot be loaded or a code is not UTF-8
    """
    try:
        gray = cv2.imdecode(np.frombuffer(png_data, dtype=np.uint8), cv2.IMREAD_GRAYSCALE)
    except cv2.error:
        raise InvalidInputError() from None
    if gray is None:
        raise InvalidInputError()

    results = []
    for obj in pyzbar.decode(gray):
        try:
            results.append(obj.data.decode('utf-8'))
        except UnicodeDecodeError:
            raise InvalidInputError() from None

    return results


# ============================================================================
# REASSEMBLY
# ============================================================================

def assemble_text(lines: Iterable[str]) -> str:
    """Validate framed lines and join their texts in part order.

    Validates:
    - Every fragment announces the same number of parts
    - Part indices cover 0..count-1 exactly once

    Lines without the magic are skipped, so the input may contain other text.

    Args:
        lines: Lines in any order, e.g. read from a file or decoded QR codes

    Returns:
        The concatenated base64url text

    Raises:
        InvalidInputError: If no framed line is found or a frame is malformed
        ValueValidationError: On inconsistent, missing or duplicate parts
    """
    num_parts = None
    fragments = []
    for line in lines:
        fragment = parse_frame(line)
        if fragment is None:
            continue
        if num_parts is None:
            num_parts = fragment['part_count']
        elif fragment['part_count'] != num_parts:
            raise ValueValidationError("inconsistent number of parts")
        fragments.append(fragment)

    if not fragments:
        raise InvalidInputError()

    fragments.sort(key=lambda f: f['part_index'])

    for i in range(num_parts):
        if i >= len(fragments) or fragments[i]['part_index'] != i:
            raise ValueValidationError("incomplete list of input")
    if len(fragments) > num_parts:
        raise ValueValidationError("duplicate part in input")

    return ''.join(f['text'] for f in fragments)


# ============================================================================
# ENCODE / DECODE PIPELINE
# ============================================================================

def encode_data(data: bytes, key: Optional[bytes] = None,
                error_correction: str = 'Q') -> List[Tuple[str, qrcode.QRCode]]:
    """Encrypt (optionally), base64url-encode and split data into framed parts."""
    if key is not None:
        data = encrypt_data(data, key)
    return split_into_parts(b64url_encode(data), error_correction)


def encode(data: bytes, key: Optional[bytes] = None, out_format: str = 'png',
           error_correction: str = 'Q', qr_per_row: int = 1) -> bytes:
    """Encode data into PNG bytes or newline-terminated text lines.

    Args:
        data: Bytes to encode
        key: Optional 32-byte key
        out_format: 'png' or 'txt'
        error_correction: Error correction level ('L', 'M', 'Q', 'H')
        qr_per_row: QR codes per row in the PNG layout

    Returns:
        Output bytes (PNG image or UTF-8 text)
    """
    if out_format not in OUTPUT_FORMATS:
        raise ValueValidationError(f"invalid output format {out_format}")

    return render_parts(encode_data(data, key, error_correction), out_format, qr_per_row)


def render_parts(parts: List[Tuple[str, qrcode.QRCode]], out_format: str,
                 qr_per_row: int = 1) -> bytes:
    if out_format == 'txt':
        return ''.join(line + '\n' for line, _ in parts).encode('utf-8')
    return generate_png([qr for _, qr in parts], qr_per_row)


def is_png(raw: bytes) -> bool:
    return len(raw) > len(PNG_SIGNATURE) and raw.startswith(PNG_SIGNATURE)


def extract_text(raw: bytes) -> str:
    """Turn decoder input (PNG image or text) into text lines."""
    if is_png(raw):
        return '\n'.join(decode_qr_codes_from_png(raw))
    try:
        return raw.decode('utf-8')
    except UnicodeDecodeError:
        raise InvalidInputError() from None


_LINE_BREAK_RE = re.compile(r'\r?\n')


def decode_data(text: str, key: Optional[bytes] = None) -> bytes:
    """Reassemble framed text and recover the original bytes."""
    # Only \n and \r\n end a line; other separators belong to the line text
    data = b64url_decode(assemble_text(_LINE_BREAK_RE.split(text)))
    if key is not None:
        data = decrypt_data(data, key)
    return data


def decode(raw: bytes, key: Optional[bytes] = None) -> bytes:
    """Decode PNG or text input produced by encode()."""
    return decode_data(extract_text(raw), key)


# ============================================================================
# INPUT AND PASSWORD SOURCES
# ============================================================================

def parse_input_source(value: str) -> Tuple[str, Optional[str]]:
    """Parse an input source: stdin | camera | env:<varname> | <file>

    Returns:
        Tuple of (kind, argument)
    """
    if value == 'stdin':
        return ('stdin', None)
    if value == 'camera':
        return ('camera', None)
    if value.startswith('env:'):
        return ('env', value[4:])
    if os.path.exists(value):
        return ('file', value)
    raise InvalidInputError(f"input source not found: {value}")


def read_input(source: Tuple[str, Optional[str]]) -> bytes:
    kind, arg = source
    if kind == 'stdin':
        return click.get_binary_stream('stdin').read()
    if kind == 'camera':
        return capture_from_camera()
    if kind == 'env':
        value = os.environ.get(arg)
        if value is None:
            raise ValueValidationError("invalid env var")
        return value.encode('utf-8')
    with open(arg, 'rb') as f:
        return f.read()


_HEX_DIGITS_RE = re.compile(r'[0-9a-fA-F]*')


def parse_hex_key(hexkey: str) -> bytes:
    """Parse a hex key, left-padding an odd number of digits with 0."""
    if not _HEX_DIGITS_RE.fullmatch(hexkey):
        raise InvalidInputError()
    if len(hexkey) % 2:
        hexkey = '0' + hexkey
    try:
        key = bytes.fromhex(hexkey)
    except ValueError:
        raise InvalidInputError() from None
    if len(key) != KEY_SIZE:
        raise InvalidInputError()
    return key


def parse_password_source(value: str) -> Tuple[str, Any]:
    """Parse a password source: prompt | env:<varname> | key:<hex> | <value>"""
    if value == 'prompt':
        return ('prompt', None)
    if value.startswith('env:'):
        return ('env', value[4:])
    if value.startswith('key:'):
        return ('key', parse_hex_key(value[4:]))
    return ('value', value)


def get_key(source: Tuple[str, Any]) -> bytes:
    """Resolve a password source into a 32-byte key."""
    kind, arg = source
    if kind == 'key':
        return arg
    if kind == 'prompt':
        password = click.prompt('Enter password', hide_input=True, err=True).strip()
    elif kind == 'env':
        password = os.environ.get(arg)
        if password is None:
            raise ValueValidationError("invalid env var")
    else:
        password = arg
    return derive_key(password)


# ============================================================================
# CAMERA CAPTURE
# ============================================================================

_CAPTURE_PAGE_HTML = """<!doctype html>
<html lang="en">
<meta charset="utf-8">
<meta name="viewport" content="width=device-width,initial-scale=1">
<title>qrstream capture</title>
<style>
  body{font-family:system-ui,Segoe UI,Roboto,Arial,sans-serif;margin:0;background:#111;color:#eee;text-align:center}
  video{width:min(92vw,640px);margin-top:16px;border-radius:12px;background:#000}
  #status{padding:12px;font-size:1.1em}
</style>
<video id="video" playsinline muted></video>
<div id="status">Starting camera...</div>
<script>
const MAGIC = MAGIC_PREFIX;
const VERSION = CURRENT_VERSION;
const video = document.getElementById('video');
const statusEl = document.getElementById('status');
const parts = new Map();
let total = 0;
let done = false;

function partInfo(line) {
  const sep = line.indexOf(';');
  if (sep < 0) return null;
  const version = Number(line.slice(MAGIC.length + 1, sep));
  if (!Number.isInteger(version) || version > VERSION) return null;
  let info = null;
  for (const field of line.slice(sep + 1).split(';')) {
    if (/^p=[0-9a-fA-F]{2}$/.test(field)) {
      const b = parseInt(field.slice(2), 16);
      info = {index: ((b >> 4) || 16) - 1, count: (b & 15) || 16};
    }
  }
  return info;
}

function collect(text) {
  for (const line of text.split(/\\r?\\n/)) {
    if (!line.startsWith(MAGIC)) continue;
    const info = partInfo(line);
    if (!info || info.index >= info.count) continue;
    if (total !== info.count) { parts.clear(); total = info.count; }
    parts.set(info.index, line);
  }
  statusEl.textContent = `Scanned ${parts.size} / ${total || '?'} QR codes`;
}

async function finish() {
  done = true;
  const lines = [...parts.keys()].sort((a, b) => a - b).map(i => parts.get(i));
  const resp = await fetch('/data', {method: 'PUT', body: lines.join('\\n')});
  statusEl.textContent = resp.ok ? 'Done. You can close this page.' : `Upload failed (${resp.status})`;
  video.srcObject.getTracks().forEach(t => t.stop());
}

async function start() {
  if (!('BarcodeDetector' in window)) {
    statusEl.textContent = 'This browser does not support QR scanning (BarcodeDetector).';
    return;
  }
  const detector = new BarcodeDetector({formats: ['qr_code']});
  video.srcObject = await navigator.mediaDevices.getUserMedia({video: {facingMode: 'environment'}});
  await video.play();
  statusEl.textContent = 'Point the camera at the QR codes';
  const tick = async () => {
    if (done) return;
    try {
      for (const code of await detector.detect(video)) collect(code.rawValue);
    } catch (e) {
      statusEl.textContent = `Scan error: ${e}`;
    }
    if (total && parts.size === total) return finish();
    requestAnimationFrame(tick);
  };
  requestAnimationFrame(tick);
}

start().catch(e => { statusEl.textContent = `Camera error: ${e}`; });
</script>
</html>
"""


def capture_page() -> bytes:
    return (_CAPTURE_PAGE_HTML
            .replace('MAGIC_PREFIX', json.dumps(QRSTREAM_MAGIC))
            .replace('CURRENT_VERSION', str(QRSTREAM_VERSION))
            .encode('utf-8'))


def capture_from_camera(open_url: Callable[[str], Any] = webbrowser.open,
                        timeout: Optional[float] = None) -> bytes:
    """Receive scanned QR text from a browser page on a loopback server.

    Serves a page at http://127.0.0.1:<random port>/ that scans QR codes with
    the device camera and PUTs the collected lines to /data. The first upload
    is returned and the server is shut down.

    Args:
        open_url: Called with the page URL once the server is listening
            (default: open it in the web browser)
        timeout: Seconds to wait for the upload (default: wait forever)

    Returns:
        The uploaded body

    Raises:
        TimeoutError: If nothing was uploaded within timeout
    """
    received = queue.Queue(maxsize=1)
    page = capture_page()

    class CaptureHandler(BaseHTTPRequestHandler):
        def _respond(self, status: int, body: bytes = b'',
                     content_type: str = 'text/plain; charset=utf-8') -> None:
            self.send_response(status)
            self.send_header('Content-Type', content_type)
            self.send_header('Content-Length', str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def do_GET(self) -> None:
            if self.path == '/':
                return self._respond(200, page, 'text/html; charset=utf-8')
            return self._respond(404)

        def do_PUT(self) -> None:
            if self.path != '/data':
                return self._respond(404)
            length = int(self.headers.get('Content-Length') or 0)
            body = self.rfile.read(length)
            try:
                received.put_nowait(body)
            except queue.Full:
                return self._respond(409)
            return self._respond(200)

        def log_message(self, format: str, *args: Any) -> None:
            # stdout carries the payload and stderr the status lines
            pass

    server = HTTPServer(('127.0.0.1', 0), CaptureHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        url = f"http://127.0.0.1:{server.server_port}/"
        click.echo(f"Opening {url}", err=True)
        open_url(url)
        try:
            return received.get(timeout=timeout)
        except queue.Empty:
            raise TimeoutError("no data received from camera page") from None
    finally:
        server.shutdown()
        server.server_close()
        thread.join()


# ============================================================================
# CLI COMMANDS
# ============================================================================

def _input_option(ctx, param, value):
    try:
        return parse_input_source(value)
    except InvalidInputError as e:
        raise click.BadParameter(str(e))


def _password_option(ctx, param, value):
    if value is None:
        return None
    try:
        return parse_password_source(value)
    except InvalidInputError:
        raise click.BadParameter("invalid key, expected 64 hex digits")


def _resolve_key(ctx: click.Context) -> Optional[bytes]:
    source = ctx.obj['password']
    return get_key(source) if source is not None else None


@click.group(context_settings={'auto_envvar_prefix': 'QRSTREAM'})
@click.version_option(version=VERSION)
@click.option('-i', '--input', 'input_source', default='stdin', callback=_input_option,
              help='Input source (stdin | camera | env:<varname> | <file>) [default: stdin]')
@click.option('-p', '--password', default=None, callback=_password_option,
              help='Encryption password (prompt | env:<varname> | key:<hex> | <value>)')
@click.pass_context
def cli(ctx, input_source, password):
    """QR Stream - Move data through QR codes or framed text lines.

    Encoded output goes to stdout as a PNG image or text lines; decoded
    bytes go to stdout as well. Status messages go to stderr.
    """
    ctx.ensure_object(dict)
    ctx.obj['input'] = input_source
    ctx.obj['password'] = password


@cli.command('encode')
@click.option('-o', '--out-format', type=click.Choice(OUTPUT_FORMATS), default='png',
              help='Output format (png | txt) [default: png]')
@click.option('--ec-level', type=click.Choice(['L', 'M', 'Q', 'H'], case_sensitive=False), default='Q',
              help='Error correction level: L(7%), M(15%), Q(25%), H(30%) [default: Q]')
@click.option('--qr-per-row', type=click.IntRange(min=1), default=1,
              help='QR codes per row, if multiple are needed [default: 1]')
@click.pass_context
def encode_cmd(ctx, out_format, ec_level, qr_per_row):
    """Encode input into QR codes (PNG) or framed text lines.

    Example:
        echo "Hello World" | qrstream encode > hello.png
        qrstream -i secret.txt -p prompt encode -o txt
    """
    try:
        key = _resolve_key(ctx)
        data = read_input(ctx.obj['input'])
        parts = encode_data(data, key, ec_level)
        output = render_parts(parts, out_format, qr_per_row)

        click.get_binary_stream('stdout').write(output)
        click.echo(f"Encoded {len(data):,} bytes into {len(parts)} QR code(s)"
                   f"{' (encrypted)' if key is not None else ''}", err=True)

    except DataTooLargeError as e:
        raise click.UsageError(str(e))
    except (QRStreamError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command('decode')
@click.pass_context
def decode_cmd(ctx):
    """Decode a PNG image or framed text lines into the original data.

    Example:
        qrstream -i hello.png decode
        qrstream -i camera -p prompt decode > secret.txt
    """
    try:
        key = _resolve_key(ctx)
        raw = read_input(ctx.obj['input'])
        data = decode(raw, key)
        click.get_binary_stream('stdout').write(data)

    except (QRStreamError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command('show-key')
@click.pass_context
def show_key(ctx):
    """Print the key derived from --password as hex."""
    try:
        key = _resolve_key(ctx)
    except (QRStreamError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(key.hex() if key is not None else "No key set")


if __name__ == '__main__':
    cli()
