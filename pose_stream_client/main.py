#!/usr/bin/env python3
"""
Pose Stream Client - Main Entry Point

Captures camera/RTSP frames, encodes them as small JPEGs and streams them to
a remote pose estimation server. Skeletons, exercise feedback and repetition
counts come back as events and are shown in an optional preview window.

Usage:
    python -m pose_stream_client.main --server wss://pose.example.com:443 --api-key KEY --exercise 1
    POSE_API_KEY=KEY python -m pose_stream_client.main --server pose.example.com:443 --rtsp rtsp://10.0.0.5:8554/cam --preview
"""

import argparse
import asyncio
import logging
import signal
import sys
import threading
import time
from typing import Optional

import cv2
import numpy as np

from .config import API_KEY_ENV, MAX_FRAME_BYTES, SessionConfig, TransportSettings
from .frame_encoder import EncodedFrame, FrameEncoder
from .frame_gate import CaptureGate
from .monitor import ExerciseMonitor
from .session import StreamingSession
from .transport import WebSocketTransport

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Keypoints below this score are not drawn.
DRAW_THRESHOLD = 0.6


class PoseStreamApp:
    """
    Demo application wiring the components together:
    - Camera/RTSP capture on a producer thread
    - Capture gate and JPEG encoding
    - Streaming session with flow control
    - Exercise monitor and preview overlay
    """

    def __init__(
        self,
        config: SessionConfig,
        camera_index: int = 0,
        rtsp_url: Optional[str] = None,
        target_height: int = 384,
        jpeg_quality: int = 10,
        mirror: bool = False,
        rate: float = 30.0,
        show_preview: bool = False,
        stall_timeout_ms: int = 1000,
        transport_settings: Optional[TransportSettings] = None,
    ):
        """
        Initialize the application.

        Args:
            config: Session configuration
            camera_index: Camera device index (used if rtsp_url is None)
            rtsp_url: RTSP stream URL (overrides camera_index if set)
            target_height: Height in pixels of uploaded frames
            jpeg_quality: Initial JPEG quality (1-100)
            mirror: Flip frames horizontally before upload (front cameras)
            rate: Capture rate (Hz)
            show_preview: Whether to show OpenCV preview window
            stall_timeout_ms: Time of invalid frames before a stall is logged
            transport_settings: WebSocket tunables
        """
        self.config = config
        self.camera_index = camera_index
        self.rtsp_url = rtsp_url
        self.rate = rate
        self.show_preview = show_preview

        # Components
        self.gate = CaptureGate(stall_timeout_ms=stall_timeout_ms)
        self.encoder = FrameEncoder(
            target_height=target_height,
            jpeg_quality=jpeg_quality,
            max_bytes=MAX_FRAME_BYTES,
            mirror=mirror,
        )
        self.monitor = ExerciseMonitor()
        self.session = StreamingSession(
            config,
            transport=WebSocketTransport(transport_settings),
        )
        self.monitor.attach(self.session)

        # Camera
        self.cap: Optional[cv2.VideoCapture] = None
        self._capture_thread: Optional[threading.Thread] = None
        self._capture_stop = threading.Event()

        # Latest frame for the preview
        self._frame_lock = threading.Lock()
        self._latest_frame: Optional[np.ndarray] = None
        self._latest_encoded: Optional[EncodedFrame] = None

        self._running = False
        self.font = cv2.FONT_HERSHEY_SIMPLEX

    async def start(self) -> None:
        """Open the camera, connect the session and start capturing."""
        logger.info("Starting Pose Stream Client...")

        if not self._init_camera():
            raise RuntimeError("Failed to initialize camera")

        # Frames captured before the handshake completes are held by the session
        self._capture_stop.clear()
        self._capture_thread = threading.Thread(
            target=self._capture_loop,
            name="capture",
            daemon=True,
        )
        self._capture_thread.start()

        if not await self.session.connect():
            raise RuntimeError("Failed to connect to analysis server")

        self._running = True
        logger.info("Pose Stream Client started")

    async def stop(self) -> None:
        """Stop capture, close the session and release resources."""
        logger.info("Stopping Pose Stream Client...")
        self._running = False

        self._capture_stop.set()
        if self._capture_thread:
            await asyncio.get_running_loop().run_in_executor(
                None, self._capture_thread.join, 2.0
            )
            self._capture_thread = None

        await self.session.stop()

        if self.cap:
            self.cap.release()
            self.cap = None

        if self.show_preview:
            cv2.destroyAllWindows()

        logger.info(f"Session stats: {self.session.get_stats()}")
        logger.info("Pose Stream Client stopped")

    async def run(self) -> None:
        """Main loop: preview and liveness."""
        target_dt = 1.0 / self.rate

        while self._running:
            loop_start = time.time()

            if self.monitor.closed:
                logger.warning("Session closed, leaving main loop")
                break

            if self.show_preview:
                self._show_preview()
                key = cv2.waitKey(1) & 0xFF
                if key in (27, ord('q')):
                    logger.info("Quit requested")
                    self._running = False

            elapsed = time.time() - loop_start
            await asyncio.sleep(max(target_dt - elapsed, 0.001))

    def request_stop(self) -> None:
        self._running = False

    def _capture_loop(self) -> None:
        """Producer thread: read, validate, encode and enqueue frames."""
        interval = 1.0 / self.rate

        while not self._capture_stop.is_set():
            started = time.monotonic()
            ok, frame = self.cap.read()

            result = self.gate.check(ok, frame)
            if not result.valid:
                logger.debug(f"Frame invalid: {result.reason}")
                if self.gate.is_stalled():
                    logger.warning("Camera is not delivering usable frames")
                time.sleep(interval)
                continue

            encoded = self.encoder.encode(result.frame)
            if encoded is not None:
                self.session.enqueue(encoded.payload)

            with self._frame_lock:
                self._latest_frame = result.frame
                if encoded is not None:
                    self._latest_encoded = encoded

            remaining = interval - (time.monotonic() - started)
            if remaining > 0:
                time.sleep(remaining)

    def _init_camera(self) -> bool:
        """Initialize video capture."""
        if self.rtsp_url:
            logger.info(f"Opening RTSP stream: {self.rtsp_url}")
            url = self.rtsp_url
            if '?' not in url:
                url += '?rtsp_transport=tcp'
            elif 'rtsp_transport' not in url:
                url += '&rtsp_transport=tcp'
            self.cap = cv2.VideoCapture(url)
        else:
            logger.info(f"Opening camera index: {self.camera_index}")
            self.cap = cv2.VideoCapture(self.camera_index)

        if not self.cap.isOpened():
            logger.error("Failed to open camera source")
            return False

        width = int(self.cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        height = int(self.cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        fps = self.cap.get(cv2.CAP_PROP_FPS)
        logger.info(f"Camera opened: {width}x{height} @ {fps:.1f} fps")

        return True

    def _show_preview(self) -> None:
        with self._frame_lock:
            frame = self._latest_frame
            encoded = self._latest_encoded
        if frame is None:
            return

        # Selfie view
        display = cv2.flip(frame, 1)
        h, w = display.shape[:2]
        if encoded is not None:
            self._draw_skeleton(display, encoded)
        self._draw_status(display, h)
        cv2.imshow("Pose Stream Client", display)

    def _draw_skeleton(self, display: np.ndarray, encoded: EncodedFrame) -> None:
        pose = self.monitor.pose
        if pose is None:
            return
        h, w = display.shape[:2]
        scale_x, scale_y = FrameEncoder.scale_factors(encoded, (w, h))
        # Uploaded frames were mirrored relative to the display unless the encoder mirrored them
        flip_x = not self.encoder.mirror

        def to_px(point):
            x = point.x * scale_x
            return (int(w - x) if flip_x else int(x), int(point.y * scale_y))

        for a, b in pose.visible_edges(DRAW_THRESHOLD):
            cv2.line(display, to_px(a), to_px(b), (255, 255, 255), 2)

    def _draw_status(self, display: np.ndarray, h: int) -> None:
        monitor = self.monitor
        state_colors = {
            "no_human": (0, 165, 255),
            "positioning": (0, 255, 255),
            "exercising": (0, 255, 0),
        }
        state = monitor.state.value
        cv2.putText(
            display,
            state.replace("_", " ").title(),
            (20, 40),
            self.font, 0.9, state_colors.get(state, (255, 255, 255)), 2
        )
        cv2.putText(
            display,
            f"Correct reps: {monitor.correct_repetitions}",
            (20, 75),
            self.font, 0.7, (255, 255, 255), 2
        )

        conn = self.session.state.value
        conn_color = (0, 255, 0) if conn in ("ready", "active") else (0, 0, 255)
        cv2.putText(display, f"Server: {conn}", (20, 100), self.font, 0.5, conn_color, 1)

        if monitor.quality is not None:
            cv2.putText(
                display,
                f"Latency: {monitor.quality.latency.name}  Environment: {monitor.quality.environment.name}",
                (20, 125),
                self.font, 0.5, (255, 255, 255), 1
            )

        if monitor.feedback_text:
            color = (0, 255, 0) if monitor.feedback_positive else (0, 0, 255)
            cv2.putText(display, monitor.feedback_text, (20, h - 40), self.font, 0.7, color, 2)


async def main_async(args: argparse.Namespace) -> None:
    """Async main entry point."""
    config = SessionConfig.from_env(
        endpoint=args.server,
        exercise_key=args.exercise,
        session_name=args.session_name,
        api_key=args.api_key,
    )
    try:
        config.validate()
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return

    app = PoseStreamApp(
        config,
        camera_index=args.camera,
        rtsp_url=args.rtsp,
        target_height=args.height,
        jpeg_quality=args.jpeg_quality,
        mirror=args.mirror,
        rate=args.rate,
        show_preview=args.preview,
        stall_timeout_ms=args.stall_timeout,
        transport_settings=TransportSettings(open_timeout=args.connect_timeout),
    )

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Shutdown signal received")
        app.request_stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
        await app.run()
    except Exception as e:
        logger.error(f"Client error: {e}")
    finally:
        await app.stop()


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Pose Stream Client",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--server",
        type=str,
        required=True,
        help="Analysis server, wss:// URL or host:port",
    )
    parser.add_argument(
        "--api-key",
        type=str,
        default=None,
        help=f"API key (falls back to ${API_KEY_ENV})",
    )
    parser.add_argument(
        "--exercise",
        type=int,
        default=1,
        help="Exercise key (1 = squat)",
    )
    parser.add_argument(
        "--session-name",
        type=str,
        default=None,
        help="Unique session name (generated if omitted)",
    )
    parser.add_argument(
        "--camera",
        type=int,
        default=0,
        help="Camera device index",
    )
    parser.add_argument(
        "--rtsp",
        type=str,
        default=None,
        help="RTSP URL (overrides --camera if set)",
    )
    parser.add_argument(
        "--height",
        type=int,
        default=384,
        help="Height of uploaded frames (px)",
    )
    parser.add_argument(
        "--jpeg-quality",
        type=int,
        default=10,
        help="Initial JPEG quality (1-100)",
    )
    parser.add_argument(
        "--mirror",
        action="store_true",
        help="Flip frames horizontally before upload (mirrored front cameras)",
    )
    parser.add_argument(
        "--rate",
        type=float,
        default=30.0,
        help="Capture rate (Hz)",
    )
    parser.add_argument(
        "--preview",
        action="store_true",
        help="Show preview window",
    )
    parser.add_argument(
        "--stall-timeout",
        type=int,
        default=1000,
        help="Time (ms) of invalid frames before the capture is reported stalled",
    )
    parser.add_argument(
        "--connect-timeout",
        type=float,
        default=10.0,
        help="Connection timeout (s)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        asyncio.run(main_async(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
