"""Executable stand-in for ffmpeg used by the integration tests.

Behavior is chosen by the host of the -i source:
    ok        normal camera
    refused   prints an error and exits 1
    hang      never produces anything
    stubborn  live transcode that ignores SIGTERM
    nofile    snapshot exits 0 without writing the image
"""
import sys
from pathlib import Path

SCRIPT = r'''#!{python}
import os
import signal
import sys
import time
from urllib.parse import urlparse

args = sys.argv[1:]
source = args[args.index("-i") + 1]
host = urlparse(source).hostname
output = args[-1]


def log(line):
    sys.stderr.write(line + "\n")
    sys.stderr.flush()


def write(path, data=b"data"):
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)


if host == "refused":
    log("[tcp @ 0x5581] Connection to tcp://refused:554 failed: Connection refused")
    sys.exit(1)
if host == "hang":
    time.sleep(60)
    sys.exit(0)

log("Input #0, rtsp, from '" + source + "':")
log("  Stream #0:0: Video: h264 (Main), yuv420p(progressive), 640x480, 25 fps")

if "hls" in args:
    if host == "stubborn":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
    write(output, b"#EXTM3U\n")
    while True:
        time.sleep(0.1)
elif "-frames:v" in args:
    if host != "nofile":
        write(output, b"\xff\xd8\xff\xd9")
    sys.exit(0)
elif output == "-":
    time.sleep(1)
    sys.exit(0)
else:
    def finish(signum, frame):
        write(output)
        sys.exit(255)

    signal.signal(signal.SIGTERM, finish)
    if "-t" in args:
        time.sleep(float(args[args.index("-t") + 1]))
        write(output)
        sys.exit(0)
    while True:
        time.sleep(0.1)
'''


def install(directory: Path) -> Path:
    """Write the fake binary into directory and return its path."""
    path = directory / "ffmpeg"
    path.write_text(SCRIPT.replace("{python}", sys.executable))
    path.chmod(0o755)
    return path
