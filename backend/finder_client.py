#!/usr/bin/env python3
"""
Item Finder Test Client
Mock phone client: teaches an item from photos, then streams a video (or a
still image) to the server and prints the guidance it gets back.
"""

import argparse
import base64
import sys
import threading
import time
from pathlib import Path

import cv2
import socketio
from colorama import Fore, Style, init

# Initialize colorama for cross-platform colored output
init(autoreset=True)

# Create Socket.IO client
sio = socketio.Client()

# Set when the server ends the search (stopped or timed out)
search_finished = threading.Event()
teach_done = threading.Event()

DISTANCE_COLORS = {
    'very_close': Fore.RED,
    'close': Fore.YELLOW,
    'medium': Fore.GREEN,
    'far': Fore.BLUE,
}


def print_header(text):
    """Print a styled header."""
    print(f"\n{Fore.CYAN}{'=' * 70}")
    print(f"{Fore.CYAN}{text.center(70)}")
    print(f"{Fore.CYAN}{'=' * 70}{Style.RESET_ALL}\n")


def print_success(text):
    print(f"{Fore.GREEN}✓ {text}{Style.RESET_ALL}")


def print_error(text):
    print(f"{Fore.RED}✗ {text}{Style.RESET_ALL}")


def print_warning(text):
    print(f"{Fore.YELLOW}⚠  {text}{Style.RESET_ALL}")


def load_and_encode_image(image_path: str) -> str:
    """
    Load a local image file and convert it to Base64 string.

    Returns:
        str: Base64 encoded image with data URL prefix
    """
    try:
        with open(image_path, 'rb') as image_file:
            image_data = image_file.read()
    except FileNotFoundError:
        print_error(f"Image file not found: {image_path}")
        sys.exit(1)

    base64_string = base64.b64encode(image_data).decode('utf-8')
    print_success(f"Loaded image: {image_path} ({len(image_data) / 1024:.1f} KB)")
    return f"data:image/jpeg;base64,{base64_string}"


def encode_frame(frame) -> str:
    """Encode an OpenCV BGR frame as a JPEG data URL."""
    ok, buffer = cv2.imencode('.jpg', frame, [cv2.IMWRITE_JPEG_QUALITY, 80])
    if not ok:
        raise ValueError("Could not encode frame")
    return f"data:image/jpeg;base64,{base64.b64encode(buffer.tobytes()).decode('utf-8')}"


def iter_frames(source: str, loop: bool):
    """Yield encoded frames from a video file, or the same image forever."""
    capture = cv2.VideoCapture(source)
    if not capture.isOpened():
        print_error(f"Could not open video source: {source}")
        sys.exit(1)
    try:
        while True:
            ok, frame = capture.read()
            if not ok:
                if not loop:
                    return
                capture.set(cv2.CAP_PROP_POS_FRAMES, 0)
                ok, frame = capture.read()
                if not ok:
                    return
            yield encode_frame(frame)
    finally:
        capture.release()


@sio.event
def connect():
    print_success("Connected to Item Finder Server")
    sio.emit('device_capabilities', {'vibration': True})


@sio.event
def disconnect():
    print_warning("Disconnected from server")


@sio.event
def connection_established(data):
    items = data.get('items', [])
    model = "ready" if data.get('model_ready') else "NOT READY"
    print_success(f"Server confirmed connection (model {model}, {len(items)}/{data.get('max_items')} items)")
    for item in items:
        print(f"  {Fore.WHITE}- {item['name']} ({item['photo_count']} photos){Style.RESET_ALL}")


@sio.event
def teach_started(data):
    print_success(f"Teaching '{data.get('name')}'")


@sio.event
def teach_progress(data):
    print_success(f"Photo {data.get('photo_count')} captured")


@sio.event
def teach_complete(data):
    print_success(f"Learned '{data.get('name')}' from {data.get('photo_count')} photos (ID: {data.get('item_id')})")
    teach_done.set()


@sio.event
def teach_rejected(data):
    print_error(f"Teaching rejected: {data.get('reason')}")
    teach_done.set()


@sio.event
def quota_exceeded(data):
    print_warning(f"Item limit reached ({data.get('count')}/{data.get('limit')})")


@sio.event
def search_started(data):
    print_header(f"SEARCHING FOR {data.get('name', '?').upper()}")


@sio.event
def search_rejected(data):
    print_error(f"Search rejected: {data.get('reason')}")
    search_finished.set()


@sio.event
def search_stopped(data):
    print_warning("Search stopped")
    search_finished.set()


@sio.event
def search_timeout(data):
    print_warning("Search timed out")
    search_finished.set()


@sio.event
def result(data):
    distance = data.get('distance', 'far')
    color = DISTANCE_COLORS.get(distance, Fore.WHITE)
    print(
        f"  {Fore.MAGENTA}●{Style.RESET_ALL} "
        f"{data.get('direction', '?'):<6} "
        f"{color}{distance:<10}{Style.RESET_ALL} "
        f"({Fore.WHITE}{data.get('confidence', 0.0):.0%}{Style.RESET_ALL})"
    )


@sio.event
def speak(data):
    print(f"  {Fore.CYAN}🔊 \"{data.get('text')}\"{Style.RESET_ALL}")
    sio.emit('utterance_done', {'utterance_id': data.get('utterance_id')})


@sio.event
def earcon(data):
    print(f"  {Fore.WHITE}{Style.DIM}♪ pan={data.get('pan'):+.1f} intensity={data.get('intensity'):.1f}{Style.RESET_ALL}")


@sio.event
def haptic(data):
    print(f"  {Fore.WHITE}{Style.DIM}〰 {data.get('pattern')}{Style.RESET_ALL}")


@sio.event
def error(data):
    print_error(f"Server error: {data}")


def teach(name: str, photo_paths, timeout: float):
    print(f"\n{Fore.CYAN}Teaching '{name}' from {len(photo_paths)} photo(s)...{Style.RESET_ALL}")
    teach_done.clear()
    sio.emit('teach_start', {'name': name})
    time.sleep(0.5)
    if teach_done.is_set():
        return
    for path in photo_paths:
        sio.emit('teach_photo', {'image': load_and_encode_image(path)})
        time.sleep(0.5)
    sio.emit('teach_complete', {})
    if not teach_done.wait(timeout):
        print_error(f"No teach confirmation after {timeout} seconds")


def search(name: str, source: str, fps: float, duration: float):
    search_finished.clear()
    sio.emit('search_start', {'name': name})

    interval = 1.0 / fps
    deadline = time.time() + duration
    sent = 0
    for frame in iter_frames(source, loop=True):
        if search_finished.is_set() or time.time() > deadline:
            break
        sio.emit('video_frame', {'frame': frame})
        sent += 1
        time.sleep(interval)

    if not search_finished.is_set():
        sio.emit('search_stop', {})
        search_finished.wait(5)
    print_success(f"Sent {sent} frames")


def main():
    parser = argparse.ArgumentParser(
        description='Test client for the Item Finder Server',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python finder_client.py keys --teach keys1.jpg keys2.jpg --video desk.mp4
  python finder_client.py keys --video desk.jpg --duration 20
  python finder_client.py wallet --video room.mp4 --server http://192.168.1.100:8000
        """
    )
    parser.add_argument('name', type=str, help='Item name to teach and/or search for')
    parser.add_argument('--teach', nargs='+', metavar='PHOTO', help='Teaching photos (skip to search an existing item)')
    parser.add_argument('--video', type=str, help='Video file or still image to stream while searching')
    parser.add_argument('--server', type=str, default='http://localhost:8000', help='Server URL (default: http://localhost:8000)')
    parser.add_argument('--fps', type=float, default=8.0, help='Frames per second to stream (default: 8)')
    parser.add_argument('--duration', type=float, default=30.0, help='Seconds to search before stopping (default: 30)')
    parser.add_argument('--timeout', type=float, default=30.0, help='Teach response timeout in seconds (default: 30)')
    args = parser.parse_args()

    for path in (args.teach or []) + ([args.video] if args.video else []):
        if not Path(path).exists():
            print_error(f"File not found: {path}")
            sys.exit(1)

    print_header("ITEM FINDER TEST CLIENT")

    try:
        sio.connect(args.server)
    except socketio.exceptions.ConnectionError as e:
        print_error(f"Failed to connect to server: {e}")
        print_warning("Make sure the server is running: python server.py")
        sys.exit(1)

    # Give server a moment to process connection
    time.sleep(0.5)

    try:
        if args.teach:
            teach(args.name, args.teach, args.timeout)
        if args.video:
            search(args.name, args.video, args.fps, args.duration)
    finally:
        time.sleep(0.5)
        sio.disconnect()

    print_header("TEST COMPLETE")


if __name__ == "__main__":
    main()
