#!/usr/bin/env python3
"""
Call Client (WebRTC)
====================
PyQt5 desktop application for one-to-one and group audio / video calls.
Signaling goes through the relay in ``server.py``; media flows directly
between participants over WebRTC, one peer connection per participant.

Run:
    python client.py
"""

import sys
import logging
import threading
import asyncio
import traceback
import time

import av
import numpy as np
import sounddevice as sd
from aiortc.mediastreams import MediaStreamError

from callcore import (
    CallConfig,
    CallError,
    CallKind,
    CallSessionManager,
    Participant,
    TransportError,
    UserCancelled,
    WebSocketSignaling,
    configure_logging,
    format_duration,
)
from callcore.config import BLOCK_SIZE, SAMPLE_RATE

# ---------------------------------------------------------------------------
# Client-side logging
# ---------------------------------------------------------------------------
configure_logging(logging.DEBUG)
log = logging.getLogger("client")

from PyQt5.QtWidgets import (
    QApplication, QMainWindow, QWidget, QVBoxLayout, QHBoxLayout,
    QLabel, QLineEdit, QPushButton, QFrame, QScrollArea, QMessageBox,
    QListWidget, QListWidgetItem, QAbstractItemView,
)
from PyQt5.QtCore import Qt, pyqtSignal, QTimer
from PyQt5.QtGui import QBrush, QColor, QImage, QPixmap

AUDIO_CHANNELS = 1
DTYPE          = "int16"
VIDEO_FPS      = 10          # remote frames forwarded to Qt per second

# ═══════════════════════════════════════════════════════════════════════════
# Dark theme (Catppuccin Mocha–inspired)
# ═══════════════════════════════════════════════════════════════════════════
DARK_THEME = """
QMainWindow, QWidget {
    background-color: #1e1e2e;
    color: #cdd6f4;
    font-family: "Segoe UI", "Arial", sans-serif;
    font-size: 13px;
}

QLineEdit {
    background-color: #313244;
    border: 2px solid #45475a;
    border-radius: 8px;
    padding: 10px 14px;
    font-size: 14px;
}
QLineEdit:focus { border-color: #89b4fa; }

QPushButton {
    background-color: #89b4fa;
    color: #1e1e2e;
    border: none;
    border-radius: 8px;
    padding: 10px 24px;
    font-size: 14px;
    font-weight: bold;
}
QPushButton:hover    { background-color: #74c7ec; }
QPushButton:disabled { background-color: #45475a; color: #6c7086; }
QPushButton:checked  { background-color: #fab387; }

QPushButton#danger          { background-color: #f38ba8; }
QPushButton#danger:hover    { background-color: #eba0ac; }
QPushButton#accept          { background-color: #a6e3a1; }
QPushButton#secondary       { background-color: #45475a; color: #cdd6f4; }
QPushButton#secondary:hover { background-color: #585b70; }

QListWidget {
    background-color: #181825;
    border: none;
    border-radius: 8px;
    padding: 6px;
}
QListWidget::item:selected { background-color: #313244; color: #89b4fa; }

QScrollArea { border: none; background-color: transparent; }

QLabel#title    { font-size: 28px; font-weight: bold; color: #89b4fa; }
QLabel#subtitle { font-size: 13px; color: #6c7086; }
QLabel#section  { font-size: 11px; font-weight: bold; color: #a6adc8; letter-spacing: 1px; }
QLabel#duration { font-size: 22px; font-weight: bold; color: #a6e3a1; }
QLabel#error    { color: #f38ba8; font-size: 12px; }
QLabel#video    { background-color: #11111b; border-radius: 8px; color: #6c7086; }

QFrame#tile          { background-color: #181825; border-radius: 8px; }
QFrame#tile-speaking { background-color: #181825; border-radius: 8px;
                       border: 2px solid #a6e3a1; }
QFrame#incoming      { background-color: #313244; border-radius: 8px;
                       border: 2px solid #a6e3a1; }
QFrame#separator     { background-color: #313244; max-height: 1px; }
"""

STATE_COLOURS = {
    "idle":         "#6c7086",
    "connecting":   "#fab387",
    "active":       "#a6e3a1",
    "ended":        "#f38ba8",
    "new":          "#6c7086",
    "checking":     "#fab387",
    "connected":    "#a6e3a1",
    "disconnected": "#fab387",
    "failed":       "#f38ba8",
    "closed":       "#6c7086",
}


# ═══════════════════════════════════════════════════════════════════════════
# Speaker: playback of every remote participant, mixed
# ═══════════════════════════════════════════════════════════════════════════
class _SourceBuffer:
    """Per-participant sample FIFO.

    WebRTC already de-jitters incoming audio, so only a short pre-buffer
    is kept to absorb scheduling hiccups between the asyncio thread and
    the PortAudio callback.  When the FIFO grows past MAX_SAMPLES the
    oldest samples are dropped to keep latency bounded.
    """

    PRE_BUFFER  = BLOCK_SIZE * 3        # ~60 ms
    MAX_SAMPLES = SAMPLE_RATE // 2      # 500 ms

    def __init__(self):
        self._pcm = np.zeros(0, dtype=np.int16)
        self._lock = threading.Lock()
        self._started = False

    def put(self, samples: np.ndarray):
        with self._lock:
            pcm = np.concatenate([self._pcm, samples])
            if pcm.size > self.MAX_SAMPLES:
                pcm = pcm[-self.MAX_SAMPLES:]
            self._pcm = pcm

    def get(self, n: int) -> np.ndarray | None:
        """Return *n* samples, or None while the source is silent."""
        with self._lock:
            if not self._started:
                if self._pcm.size < self.PRE_BUFFER:
                    return None
                self._started = True
            if self._pcm.size == 0:
                # Sender stopped; wait for a full pre-buffer again
                self._started = False
                return None
            chunk, self._pcm = self._pcm[:n], self._pcm[n:]
        if chunk.size < n:
            chunk = np.concatenate([chunk, np.zeros(n - chunk.size, dtype=np.int16)])
        return chunk


class Speaker:
    """Mixes remote participants into one sounddevice output stream."""

    def __init__(self):
        self._sources: dict[str, _SourceBuffer] = {}
        self._sources_lock = threading.Lock()
        self._stream = None

    def start(self):
        self._stream = sd.OutputStream(
            samplerate=SAMPLE_RATE,
            channels=AUDIO_CHANNELS,
            dtype=DTYPE,
            blocksize=BLOCK_SIZE,
            callback=self._out_cb,
        )
        self._stream.start()

    def stop(self):
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except Exception as e:
                log.debug("Error closing output stream: %s", e)
        self.clear()

    def feed(self, participant_id: str, samples: np.ndarray):
        with self._sources_lock:
            buf = self._sources.get(participant_id)
            if buf is None:
                buf = self._sources[participant_id] = _SourceBuffer()
        buf.put(samples)

    def drop(self, participant_id: str):
        with self._sources_lock:
            self._sources.pop(participant_id, None)

    def clear(self):
        with self._sources_lock:
            self._sources.clear()

    # -- PortAudio thread ----------------------------------------------------

    def _out_cb(self, outdata, frames, time_info, status):
        mixed = np.zeros(frames, dtype=np.float32)
        count = 0

        with self._sources_lock:
            buffers = list(self._sources.values())

        for buf in buffers:
            chunk = buf.get(frames)
            if chunk is not None:
                mixed += chunk.astype(np.float32)
                count += 1

        if count:
            outdata[:, 0] = np.clip(mixed, -32768, 32767).astype(np.int16)
        else:
            outdata.fill(0)


def _record_dict(record) -> dict:
    data = record.to_dict()
    data["failed"] = record.failed
    data["reason"] = record.reason
    return data


def _participants_snapshot(session) -> list[dict]:
    main = session.main_participant()
    return [
        {
            "id": p.id,
            "name": p.display_name,
            "audio": p.audio_enabled,
            "video": p.video_enabled,
            "speaking": p.speaking,
            "state": p.link_state.value,
            "degraded": p.degraded,
            "local": p.id == session.local_id,
            "main": main is not None and p.id == main.id,
        }
        for p in session.participants.values()
    ]


# ═══════════════════════════════════════════════════════════════════════════
# CallController: asyncio thread running signaling + the session manager
# ═══════════════════════════════════════════════════════════════════════════
class CallController(QWidget):
    """Bridges the Qt main thread and the call core.

    Runs an asyncio event loop in a background thread that owns the
    WebSocket signaling channel and the ``CallSessionManager``.  The UI
    talks to it through the public methods below; everything coming back
    is delivered as Qt signals, which Qt queues onto the main thread.
    """

    sig_connected       = pyqtSignal(list)            # peers online
    sig_peers           = pyqtSignal(list)
    sig_reconnecting    = pyqtSignal(int)             # attempt number
    sig_disconnected    = pyqtSignal(str)             # reason
    sig_error           = pyqtSignal(str)             # connection failed
    sig_call_error      = pyqtSignal(str)             # one call operation failed
    sig_incoming        = pyqtSignal(str, str, list)  # session id, kind, callers
    sig_incoming_gone   = pyqtSignal(str)             # session id
    sig_call_started    = pyqtSignal(str, str)        # session id, kind
    sig_call_aborted    = pyqtSignal()
    sig_call_state      = pyqtSignal(str)
    sig_participants    = pyqtSignal(list)            # [dict]
    sig_local_media     = pyqtSignal(str, bool)       # kind, enabled
    sig_screenshare     = pyqtSignal(bool)
    sig_video_frame     = pyqtSignal(str, QImage)     # participant id, frame
    sig_history         = pyqtSignal(dict)            # CallRecord as dict

    def __init__(self, parent=None):
        super().__init__(parent)
        self.hide()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread = None
        self._manager: CallSessionManager | None = None
        self._speaker: Speaker | None = None
        self._stop: asyncio.Event | None = None
        self._closing = False
        self._disconnect_reason = "disconnected"
        self._tasks: set[asyncio.Task] = set()

    # -- public API (Qt thread) ----------------------------------------------

    def connect_to(self, address: str, user_id: str):
        self._closing = False
        self._thread = threading.Thread(target=self._run_loop, args=(address, user_id),
                                        daemon=True)
        self._thread.start()

    def disconnect(self):
        log.info("Disconnect requested by user")
        self._closing = True
        self._disconnect_reason = "signed out"
        loop = self._loop
        if loop and loop.is_running() and self._stop is not None:
            loop.call_soon_threadsafe(self._stop.set)

    def start_call(self, ids: list[str], kind: str):
        session_id = f"{int(time.time() * 1000):x}"
        roster = [Participant(pid) for pid in ids]
        self._submit(self._manager_call("start_call", session_id, roster, CallKind(kind)))

    def accept(self, session_id: str):
        self._submit(self._manager_call("accept_call", session_id))

    def decline(self, session_id: str):
        self._submit(self._decline(session_id))

    def end_call(self):
        self._submit(self._manager_call("end_active_call", "hangup"))

    def toggle_mute(self):
        self._submit(self._toggle("audio"))

    def toggle_video(self):
        self._submit(self._toggle("video"))

    def toggle_screen_share(self):
        self._submit(self._toggle_screen())

    def call_duration(self) -> float:
        manager = self._manager
        session = manager.current_session() if manager else None
        return session.duration() if session else 0.0

    # -- asyncio background thread -------------------------------------------

    def _submit(self, coro):
        loop = self._loop
        if loop is None or not loop.is_running():
            coro.close()
            return
        fut = asyncio.run_coroutine_threadsafe(coro, loop)
        fut.add_done_callback(self._on_op_done)

    def _on_op_done(self, fut):
        if fut.cancelled():
            return
        e = fut.exception()
        if e is None:
            return
        if isinstance(e, UserCancelled):
            log.info("Screen share cancelled: %s", e)
            self.sig_call_error.emit("Screen sharing was cancelled.")
        elif isinstance(e, CallError):
            log.warning("Call operation failed: %s", e)
            self.sig_call_error.emit(str(e))
        else:
            log.error("Call operation crashed: %s\n%s", e,
                      "".join(traceback.format_exception(type(e), e, e.__traceback__)))
            self.sig_call_error.emit(f"Unexpected error: {e}")

    def _run_loop(self, address: str, user_id: str):
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(self._main_async(address, user_id))
        except Exception as e:
            if not self._closing:
                log.error("Event loop crashed: %s\n%s", e, traceback.format_exc())
                self.sig_error.emit(str(e))
        finally:
            try:
                self._loop.run_until_complete(self._loop.shutdown_asyncgens())
            except Exception as e:
                log.debug("shutdown_asyncgens failed: %s", e)
            self._loop.close()
            self._loop = None

    async def _main_async(self, address: str, user_id: str):
        self._stop = asyncio.Event()
        signaling = WebSocketSignaling(address, user_id)
        manager = CallSessionManager(user_id, signaling, config=CallConfig.from_env())

        signaling.on("peer_joined", lambda pid: self.sig_peers.emit(list(signaling.peers)))
        signaling.on("peer_left", lambda pid: self.sig_peers.emit(list(signaling.peers)))
        signaling.on("reconnecting", self.sig_reconnecting.emit)

        @signaling.on("disconnected")
        def on_disconnected(reason):
            self._disconnect_reason = f"Lost connection to the relay ({reason})."
            self._stop.set()

        manager.on("incoming", self._on_incoming)
        manager.on("incomingcancelled",
                   lambda call: self.sig_incoming_gone.emit(call.session_id))
        manager.on("callstarted", self._on_call_started)
        manager.on("callended", self._on_call_ended)

        try:
            await signaling.connect()
        except TransportError as e:
            self.sig_error.emit(f"{e}. Is the relay running?")
            return

        self._manager = manager
        self._speaker = Speaker()
        try:
            self._speaker.start()
        except Exception as e:
            log.error("Audio output init failed: %s", e)
            self._speaker = None

        self.sig_connected.emit(list(signaling.peers))
        try:
            await self._stop.wait()
        finally:
            await manager.close()
            await signaling.close()
            for task in list(self._tasks):
                task.cancel()
            if self._speaker is not None:
                self._speaker.stop()
                self._speaker = None
            self._manager = None
            self.sig_disconnected.emit(self._disconnect_reason)

    def _spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # -- operations (loop thread) --------------------------------------------

    async def _manager_call(self, name: str, *args):
        manager = self._manager
        if manager is None:
            raise CallError("not connected")
        try:
            await getattr(manager, name)(*args)
        except BaseException:
            # A call that failed before connecting leaves no session behind
            if name in ("start_call", "accept_call") and manager.current_session() is None:
                self.sig_call_aborted.emit()
            raise

    async def _decline(self, session_id: str):
        record = self._manager.decline_call(session_id)
        if record is not None:
            self.sig_history.emit(_record_dict(record))

    async def _toggle(self, kind: str):
        session = self._manager.current_session() if self._manager else None
        if session is None:
            return
        if kind == "audio":
            session.toggle_mute()
        else:
            session.toggle_video()

    async def _toggle_screen(self):
        session = self._manager.current_session() if self._manager else None
        if session is None:
            return
        if session.media.screen_sharing:
            await session.stop_screen_share()
        else:
            await session.start_screen_share()

    # -- manager / session events (loop thread) ------------------------------

    def _on_incoming(self, call):
        log.info("Incoming %s call %s from %s", call.kind.value, call.session_id,
                 ", ".join(call.callers))
        self.sig_incoming.emit(call.session_id, call.kind.value, list(call.callers))

    def _on_call_started(self, session):
        self.sig_call_started.emit(session.session_id, session.kind.value)

        def refresh(*_):
            self.sig_participants.emit(_participants_snapshot(session))

        @session.on("statechange")
        def on_state(s, state):
            self.sig_call_state.emit(state.value)
            refresh()

        session.on("participantchange", refresh)
        session.on("participantleft", refresh)
        session.on("localmedia", lambda s, kind, enabled: self.sig_local_media.emit(kind, enabled))
        session.on("screenshare", lambda s, sharing: self.sig_screenshare.emit(sharing))
        session.on("track", lambda s, pid, track: self._spawn(self._consume(pid, track)))
        refresh()

    def _on_call_ended(self, session, record):
        if self._speaker is not None:
            self._speaker.clear()
        self.sig_history.emit(_record_dict(record))

    async def _consume(self, participant_id: str, track):
        """Pull one remote track until it ends: audio to the speaker, video to Qt."""
        try:
            if track.kind == "audio":
                resampler = av.AudioResampler(format="s16", layout="mono", rate=SAMPLE_RATE)
                while True:
                    frame = await track.recv()
                    speaker = self._speaker
                    if speaker is None:
                        continue
                    for f in resampler.resample(frame):
                        speaker.feed(participant_id, f.to_ndarray().flatten())
            else:
                last = 0.0
                while True:
                    frame = await track.recv()
                    now = time.monotonic()
                    if now - last < 1.0 / VIDEO_FPS:
                        continue
                    last = now
                    img = frame.to_ndarray(format="rgb24")
                    h, w, _ = img.shape
                    qimg = QImage(img.tobytes(), w, h, 3 * w, QImage.Format_RGB888).copy()
                    self.sig_video_frame.emit(participant_id, qimg)
        except MediaStreamError:
            pass
        finally:
            if track.kind == "audio" and self._speaker is not None:
                self._speaker.drop(participant_id)


# ═══════════════════════════════════════════════════════════════════════════
# ParticipantTile
# ═══════════════════════════════════════════════════════════════════════════
class ParticipantTile(QFrame):
    """One row in the call roster: name, link state and media flags."""

    _STYLE_IDLE     = "color: #cdd6f4; font-size: 14px; font-weight: bold;"
    _STYLE_SPEAKING = "color: #a6e3a1; font-size: 14px; font-weight: bold;"

    def __init__(self, parent=None):
        super().__init__(parent)
        self.setObjectName("tile")
        self.setMinimumHeight(44)

        row = QHBoxLayout(self)
        row.setContentsMargins(14, 8, 14, 8)
        row.setSpacing(10)

        self._name_lbl = QLabel()
        self._name_lbl.setStyleSheet(self._STYLE_IDLE)
        row.addWidget(self._name_lbl)
        row.addStretch()

        self._media_lbl = QLabel()
        row.addWidget(self._media_lbl)

        self._state_lbl = QLabel()
        row.addWidget(self._state_lbl)

    def set_participant(self, p: dict):
        name = f"{p['name']}  (you)" if p["local"] else p["name"]
        if p["speaking"]:
            name = f"\U0001f50a  {name}"
        self._name_lbl.setText(name)
        self._name_lbl.setStyleSheet(self._STYLE_SPEAKING if p["speaking"] else self._STYLE_IDLE)

        mic = "\U0001f3a4" if p["audio"] else "\U0001f507"
        cam = "  \U0001f4f7" if p["video"] else ""
        self._media_lbl.setText(mic + cam)

        if p["local"]:
            self._state_lbl.setText("")
        else:
            state = p["state"]
            label = f"{state}  ⚠" if p["degraded"] else state
            self._state_lbl.setText(label)
            self._state_lbl.setStyleSheet(f"color: {STATE_COLOURS.get(state, '#6c7086')};"
                                          "font-size: 12px;")

        self.setObjectName("tile-speaking" if p["speaking"] else "tile")
        self.style().unpolish(self)
        self.style().polish(self)


def _sep() -> QFrame:
    f = QFrame()
    f.setObjectName("separator")
    f.setFrameShape(QFrame.HLine)
    return f


# ═══════════════════════════════════════════════════════════════════════════
# LoginPage
# ═══════════════════════════════════════════════════════════════════════════
class LoginPage(QWidget):
    sig_connect = pyqtSignal(str, str)   # (user id, address)

    def __init__(self, parent=None):
        super().__init__(parent)

        outer = QVBoxLayout(self)
        outer.setAlignment(Qt.AlignCenter)

        box = QVBoxLayout()
        box.setSpacing(12)

        title = QLabel("Calls")
        title.setObjectName("title")
        title.setAlignment(Qt.AlignCenter)
        box.addWidget(title)

        sub = QLabel("Enter your id and the relay address to sign in")
        sub.setObjectName("subtitle")
        sub.setAlignment(Qt.AlignCenter)
        box.addWidget(sub)
        box.addSpacing(20)

        self._id = QLineEdit()
        self._id.setPlaceholderText("Your id")
        self._id.setMaxLength(32)
        self._id.setFixedWidth(360)
        box.addWidget(self._id, alignment=Qt.AlignCenter)

        self._addr = QLineEdit()
        self._addr.setPlaceholderText("Relay address  (e.g. 192.168.1.5:9753)")
        self._addr.setText("localhost:9753")
        self._addr.setFixedWidth(360)
        box.addWidget(self._addr, alignment=Qt.AlignCenter)

        box.addSpacing(8)

        self._btn = QPushButton("Sign in")
        self._btn.setFixedWidth(360)
        self._btn.clicked.connect(self._on_click)
        box.addWidget(self._btn, alignment=Qt.AlignCenter)

        self._err = QLabel("")
        self._err.setObjectName("error")
        self._err.setAlignment(Qt.AlignCenter)
        self._err.setWordWrap(True)
        self._err.setFixedWidth(360)
        box.addWidget(self._err, alignment=Qt.AlignCenter)

        outer.addLayout(box)

        self._id.returnPressed.connect(self._on_click)
        self._addr.returnPressed.connect(self._on_click)

    def _on_click(self):
        user_id = self._id.text().strip()
        addr = self._addr.text().strip()
        if not user_id:
            self._err.setText("Please enter your id.")
            return
        if not addr:
            self._err.setText("Please enter a relay address.")
            return
        self._err.setText("")
        self._btn.setEnabled(False)
        self._btn.setText("Connecting…")
        self.sig_connect.emit(user_id, addr)

    def reset(self, error: str = ""):
        self._btn.setEnabled(True)
        self._btn.setText("Sign in")
        self._err.setText(error)


# ═══════════════════════════════════════════════════════════════════════════
# HomePage: who is online, incoming calls, history
# ═══════════════════════════════════════════════════════════════════════════
class HomePage(QWidget):
    sig_call       = pyqtSignal(list, str)   # ids, kind
    sig_accept     = pyqtSignal(str)
    sig_decline    = pyqtSignal(str)
    sig_disconnect = pyqtSignal()

    def __init__(self, user_id: str, parent=None):
        super().__init__(parent)
        self._user_id = user_id
        self._incoming_id: str | None = None
        self._build()

    def _build(self):
        root = QHBoxLayout(self)
        root.setContentsMargins(0, 0, 0, 0)
        root.setSpacing(0)

        # ── left panel (online) ────────────────────────────────────────────
        left = QWidget()
        left.setFixedWidth(280)
        left.setStyleSheet("background-color: #181825;")
        ll = QVBoxLayout(left)
        ll.setContentsMargins(12, 16, 12, 16)
        ll.setSpacing(6)

        hdr = QLabel("ONLINE")
        hdr.setObjectName("section")
        ll.addWidget(hdr)

        self._peers = QListWidget()
        self._peers.setSelectionMode(QAbstractItemView.MultiSelection)
        self._peers.itemSelectionChanged.connect(self._on_selection)
        ll.addWidget(self._peers)
        root.addWidget(left)

        # ── right panel ───────────────────────────────────────────────────
        right = QWidget()
        rl = QVBoxLayout(right)
        rl.setContentsMargins(32, 24, 32, 24)
        rl.setSpacing(14)

        self._status = QLabel(f"Signed in as  {self._user_id}")
        self._status.setStyleSheet("font-size: 16px; font-weight: bold;")
        rl.addWidget(self._status)

        # incoming call banner (hidden until someone calls)
        self._incoming = QFrame()
        self._incoming.setObjectName("incoming")
        il = QHBoxLayout(self._incoming)
        il.setContentsMargins(14, 10, 14, 10)
        self._incoming_lbl = QLabel()
        self._incoming_lbl.setStyleSheet("font-size: 14px; font-weight: bold;")
        il.addWidget(self._incoming_lbl)
        il.addStretch()
        accept = QPushButton("Accept")
        accept.setObjectName("accept")
        accept.clicked.connect(lambda: self._answer(self.sig_accept))
        il.addWidget(accept)
        decline = QPushButton("Decline")
        decline.setObjectName("danger")
        decline.clicked.connect(lambda: self._answer(self.sig_decline))
        il.addWidget(decline)
        self._incoming.hide()
        rl.addWidget(self._incoming)

        rl.addWidget(_sep())

        call_hdr = QLabel("NEW CALL")
        call_hdr.setObjectName("section")
        rl.addWidget(call_hdr)

        self._ids = QLineEdit()
        self._ids.setPlaceholderText("Ids to call, comma-separated (or pick on the left)")
        rl.addWidget(self._ids)

        btn_row = QHBoxLayout()
        audio_btn = QPushButton("Audio Call")
        audio_btn.clicked.connect(lambda: self._place(CallKind.AUDIO.value))
        btn_row.addWidget(audio_btn)
        video_btn = QPushButton("Video Call")
        video_btn.clicked.connect(lambda: self._place(CallKind.VIDEO.value))
        btn_row.addWidget(video_btn)
        btn_row.addStretch()
        rl.addLayout(btn_row)

        self._err = QLabel("")
        self._err.setObjectName("error")
        self._err.setWordWrap(True)
        rl.addWidget(self._err)

        rl.addWidget(_sep())

        hist_hdr = QLabel("RECENT CALLS")
        hist_hdr.setObjectName("section")
        rl.addWidget(hist_hdr)

        self._history = QListWidget()
        rl.addWidget(self._history, stretch=1)

        dc_row = QHBoxLayout()
        dc_btn = QPushButton("Sign out")
        dc_btn.setObjectName("danger")
        dc_btn.clicked.connect(lambda: self.sig_disconnect.emit())
        dc_row.addWidget(dc_btn)
        dc_row.addStretch()
        rl.addLayout(dc_row)

        root.addWidget(right, stretch=1)

    # -- peers ---------------------------------------------------------------

    def set_peers(self, peers: list[str]):
        selected = {i.text() for i in self._peers.selectedItems()}
        self._peers.blockSignals(True)
        self._peers.clear()
        for pid in sorted(peers):
            item = QListWidgetItem(pid)
            self._peers.addItem(item)
            item.setSelected(pid in selected)
        self._peers.blockSignals(False)

    def _on_selection(self):
        self._ids.setText(", ".join(i.text() for i in self._peers.selectedItems()))

    def _place(self, kind: str):
        ids = [p.strip() for p in self._ids.text().split(",") if p.strip()]
        ids = [p for p in ids if p != self._user_id]
        if not ids:
            self._err.setText("Pick at least one person to call.")
            return
        self._err.setText("")
        self.sig_call.emit(ids, kind)

    def show_error(self, msg: str):
        self._err.setText(msg)

    def set_status(self, text: str, colour: str = "#cdd6f4"):
        self._status.setText(text)
        self._status.setStyleSheet(f"font-size: 16px; font-weight: bold; color: {colour};")

    # -- incoming ------------------------------------------------------------

    def show_incoming(self, session_id: str, kind: str, callers: list[str]):
        self._incoming_id = session_id
        icon = "\U0001f4f9" if kind == CallKind.VIDEO.value else "\U0001f4de"
        self._incoming_lbl.setText(f"{icon}  Incoming {kind} call from {', '.join(callers)}")
        self._incoming.show()

    def hide_incoming(self, session_id: str | None = None):
        if session_id is None or session_id == self._incoming_id:
            self._incoming_id = None
            self._incoming.hide()

    def _answer(self, signal):
        session_id = self._incoming_id
        self.hide_incoming()
        if session_id is not None:
            signal.emit(session_id)

    # -- history -------------------------------------------------------------

    def add_history(self, record: dict):
        who = ", ".join(p["name"] for p in record["participants"]) or "?"
        direction = record["direction"]
        arrow = {"outgoing": "↗", "incoming": "↙", "missed": "✖"}.get(direction, "")
        when = (record["start_time"] or record["end_time"] or "")[11:16]
        if direction == "missed":
            text = f"{arrow}  {who}   missed {record['type']} call   {when}"
        elif record["failed"]:
            text = f"{arrow}  {who}   failed ({record['reason']})   {when}"
        else:
            text = f"{arrow}  {who}   {format_duration(record['duration'])}   {when}"
        item = QListWidgetItem(text)
        if direction == "missed" or record["failed"]:
            item.setForeground(QBrush(QColor("#f38ba8")))
        self._history.insertItem(0, item)


# ═══════════════════════════════════════════════════════════════════════════
# CallPage: the ongoing call
# ═══════════════════════════════════════════════════════════════════════════
class CallPage(QWidget):
    sig_mute   = pyqtSignal()
    sig_video  = pyqtSignal()
    sig_screen = pyqtSignal()
    sig_end    = pyqtSignal()

    def __init__(self, session_id: str, kind: str, parent=None):
        super().__init__(parent)
        self._kind = kind
        self._tiles: dict[str, ParticipantTile] = {}
        self._main_id: str | None = None

        root = QVBoxLayout(self)
        root.setContentsMargins(32, 24, 32, 24)
        root.setSpacing(14)

        hdr = QHBoxLayout()
        title = QLabel(f"{kind.capitalize()} call")
        title.setStyleSheet("font-size: 18px; font-weight: bold;")
        hdr.addWidget(title)
        self._state = QLabel("idle")
        hdr.addWidget(self._state)
        hdr.addStretch()
        self._duration = QLabel("00:00")
        self._duration.setObjectName("duration")
        hdr.addWidget(self._duration)
        root.addLayout(hdr)

        sub = QLabel(f"Session {session_id}")
        sub.setObjectName("subtitle")
        root.addWidget(sub)

        self._main_lbl = QLabel("Waiting for others to join…")
        self._main_lbl.setStyleSheet("font-size: 14px; color: #a6adc8;")
        root.addWidget(self._main_lbl)

        self._video = QLabel("No video")
        self._video.setObjectName("video")
        self._video.setAlignment(Qt.AlignCenter)
        self._video.setMinimumHeight(240)
        self._video.setVisible(kind == CallKind.VIDEO.value)
        root.addWidget(self._video, stretch=2)

        roster_hdr = QLabel("PARTICIPANTS")
        roster_hdr.setObjectName("section")
        root.addWidget(roster_hdr)

        scroll = QScrollArea()
        scroll.setWidgetResizable(True)
        scroll.setHorizontalScrollBarPolicy(Qt.ScrollBarAlwaysOff)
        scroll_w = QWidget()
        scroll_w.setStyleSheet("background-color: transparent;")
        self._roster = QVBoxLayout(scroll_w)
        self._roster.setContentsMargins(0, 0, 0, 0)
        self._roster.setSpacing(4)
        self._roster.addStretch()
        scroll.setWidget(scroll_w)
        root.addWidget(scroll, stretch=1)

        btn_row = QHBoxLayout()
        self._mute_btn = QPushButton("Mute")
        self._mute_btn.setObjectName("secondary")
        self._mute_btn.setCheckable(True)
        self._mute_btn.clicked.connect(lambda: self.sig_mute.emit())
        btn_row.addWidget(self._mute_btn)

        self._video_btn = QPushButton("Camera Off")
        self._video_btn.setObjectName("secondary")
        self._video_btn.setCheckable(True)
        self._video_btn.setEnabled(kind == CallKind.VIDEO.value)
        self._video_btn.clicked.connect(lambda: self.sig_video.emit())
        btn_row.addWidget(self._video_btn)

        self._screen_btn = QPushButton("Share Screen")
        self._screen_btn.setObjectName("secondary")
        self._screen_btn.setCheckable(True)
        self._screen_btn.clicked.connect(lambda: self.sig_screen.emit())
        btn_row.addWidget(self._screen_btn)

        btn_row.addStretch()
        end_btn = QPushButton("End Call")
        end_btn.setObjectName("danger")
        end_btn.clicked.connect(lambda: self.sig_end.emit())
        btn_row.addWidget(end_btn)
        root.addLayout(btn_row)

    # -- updates -------------------------------------------------------------

    def set_state(self, state: str):
        self._state.setText(state)
        self._state.setStyleSheet(f"color: {STATE_COLOURS.get(state, '#cdd6f4')};"
                                  "font-size: 14px; font-weight: bold;")

    def set_duration(self, seconds: float):
        self._duration.setText(format_duration(seconds))

    def set_participants(self, participants: list[dict]):
        seen = set()
        for p in participants:
            seen.add(p["id"])
            tile = self._tiles.get(p["id"])
            if tile is None:
                tile = self._tiles[p["id"]] = ParticipantTile()
                self._roster.insertWidget(self._roster.count() - 1, tile)
            tile.set_participant(p)
            if p["main"]:
                self._set_main(p)

        for pid in list(self._tiles):
            if pid not in seen:
                self._tiles.pop(pid).deleteLater()

    def _set_main(self, p: dict):
        if p["id"] != self._main_id:
            self._main_id = p["id"]
            self._video.setText("No video")
        verb = "speaking" if p["speaking"] else "in the call"
        self._main_lbl.setText(f"{p['name']} is {verb}")

    def show_frame(self, participant_id: str, image: QImage):
        if participant_id != self._main_id or not self._video.isVisible():
            return
        pix = QPixmap.fromImage(image).scaled(
            self._video.size(), Qt.KeepAspectRatio, Qt.SmoothTransformation)
        self._video.setPixmap(pix)

    def set_local_media(self, kind: str, enabled: bool):
        if kind == "audio":
            self._mute_btn.setChecked(not enabled)
            self._mute_btn.setText("Unmute" if not enabled else "Mute")
        else:
            self._video_btn.setChecked(not enabled)
            self._video_btn.setText("Camera On" if not enabled else "Camera Off")

    def set_screen_sharing(self, sharing: bool):
        self._screen_btn.setChecked(sharing)
        self._screen_btn.setText("Stop Sharing" if sharing else "Share Screen")


# ═══════════════════════════════════════════════════════════════════════════
# MainWindow
# ═══════════════════════════════════════════════════════════════════════════
class MainWindow(QMainWindow):
    def __init__(self):
        super().__init__()
        self.setWindowTitle("Calls")
        self.resize(900, 620)
        self.setMinimumSize(720, 480)

        self._ctl = CallController(self)
        self._user_id = ""
        self._peers: list[str] = []
        self._history: list[dict] = []

        # Duration label refresh while a call is up
        self._tick = QTimer(self)
        self._tick.setInterval(500)
        self._tick.timeout.connect(self._on_tick)

        # Central stacked area
        self._container = QWidget()
        self._layout    = QVBoxLayout(self._container)
        self._layout.setContentsMargins(0, 0, 0, 0)
        self.setCentralWidget(self._container)

        self._login = LoginPage()
        self._home: HomePage | None = None
        self._call: CallPage | None = None

        self._show_page(self._login)

        # Signals
        self._login.sig_connect.connect(self._do_connect)
        self._ctl.sig_connected.connect(self._on_connected)
        self._ctl.sig_peers.connect(self._on_peers)
        self._ctl.sig_reconnecting.connect(self._on_reconnecting)
        self._ctl.sig_disconnected.connect(self._on_disconnected)
        self._ctl.sig_error.connect(self._on_error)
        self._ctl.sig_call_error.connect(self._on_call_error)
        self._ctl.sig_incoming.connect(self._on_incoming)
        self._ctl.sig_incoming_gone.connect(self._on_incoming_gone)
        self._ctl.sig_call_started.connect(self._on_call_started)
        self._ctl.sig_call_aborted.connect(self._on_call_aborted)
        self._ctl.sig_call_state.connect(self._on_call_state)
        self._ctl.sig_participants.connect(self._on_participants)
        self._ctl.sig_local_media.connect(self._on_local_media)
        self._ctl.sig_screenshare.connect(self._on_screenshare)
        self._ctl.sig_video_frame.connect(self._on_video_frame)
        self._ctl.sig_history.connect(self._on_history)

    # ── page management ────────────────────────────────────────────────────

    def _show_page(self, page: QWidget):
        while self._layout.count():
            w = self._layout.takeAt(0).widget()
            if w:
                w.setParent(None)
        self._layout.addWidget(page)
        page.show()

    def _show_home(self):
        self._home = HomePage(self._user_id)
        self._home.set_peers(self._peers)
        for record in self._history:
            self._home.add_history(record)
        self._home.sig_call.connect(self._ctl.start_call)
        self._home.sig_accept.connect(self._ctl.accept)
        self._home.sig_decline.connect(self._ctl.decline)
        self._home.sig_disconnect.connect(self._ctl.disconnect)
        self._show_page(self._home)

    # ── connection ─────────────────────────────────────────────────────────

    def _do_connect(self, user_id: str, address: str):
        log.info("User signing in as %r to %s", user_id, address)
        self._user_id = user_id
        self._ctl.connect_to(address, user_id)

    def _on_connected(self, peers: list[str]):
        log.info("Connected, %d peers online", len(peers))
        self._peers = list(peers)
        self._show_home()

    def _on_peers(self, peers: list[str]):
        self._peers = list(peers)
        if self._home:
            self._home.set_peers(self._peers)

    def _on_reconnecting(self, attempt: int):
        log.info("Reconnecting... attempt %d", attempt)
        if self._home:
            self._home.set_status(f"Reconnecting... (attempt {attempt})", "#fab387")

    def _on_disconnected(self, reason: str):
        log.info("Disconnected from relay: %s", reason)
        self._cleanup()
        self._login.reset(reason if reason != "signed out" else "")
        self._show_page(self._login)

    def _on_error(self, msg: str):
        log.error("Connection error: %s", msg)
        self._cleanup()
        self._login.reset(f"Connection error: {msg}")
        self._show_page(self._login)

    # ── calls ──────────────────────────────────────────────────────────────

    def _on_call_error(self, msg: str):
        if self._call is None and self._home is not None:
            self._home.show_error(msg)
        else:
            QMessageBox.warning(self, "Call", msg)

    def _on_incoming(self, session_id: str, kind: str, callers: list[str]):
        if self._home:
            self._home.show_incoming(session_id, kind, callers)
        QApplication.alert(self)

    def _on_incoming_gone(self, session_id: str):
        if self._home:
            self._home.hide_incoming(session_id)

    def _on_call_started(self, session_id: str, kind: str):
        self._call = CallPage(session_id, kind)
        self._call.sig_mute.connect(self._ctl.toggle_mute)
        self._call.sig_video.connect(self._ctl.toggle_video)
        self._call.sig_screen.connect(self._ctl.toggle_screen_share)
        self._call.sig_end.connect(self._ctl.end_call)
        self._home = None
        self._show_page(self._call)
        self._tick.start()

    def _on_call_aborted(self):
        if self._call is not None:
            self._tick.stop()
            self._call = None
            self._show_home()

    def _on_call_state(self, state: str):
        if self._call:
            self._call.set_state(state)

    def _on_participants(self, participants: list[dict]):
        if self._call:
            self._call.set_participants(participants)

    def _on_local_media(self, kind: str, enabled: bool):
        if self._call:
            self._call.set_local_media(kind, enabled)

    def _on_screenshare(self, sharing: bool):
        if self._call:
            self._call.set_screen_sharing(sharing)

    def _on_video_frame(self, participant_id: str, image: QImage):
        if self._call:
            self._call.show_frame(participant_id, image)

    def _on_history(self, record: dict):
        self._history.append(record)
        if self._call is not None and record["direction"] != "missed":
            # The ongoing call ended (or never got going)
            self._tick.stop()
            self._call = None
            self._show_home()
            if record["failed"]:
                self._home.show_error(f"Call failed: {record['reason']}")
        elif self._home:
            self._home.add_history(record)

    def _on_tick(self):
        if self._call:
            self._call.set_duration(self._ctl.call_duration())

    # ── cleanup ────────────────────────────────────────────────────────────

    def _cleanup(self):
        self._tick.stop()
        self._call = None
        self._home = None
        self._peers = []

    def closeEvent(self, event):
        self._cleanup()
        self._ctl.disconnect()
        super().closeEvent(event)


# ═══════════════════════════════════════════════════════════════════════════
# Entry point
# ═══════════════════════════════════════════════════════════════════════════
def main():
    app = QApplication(sys.argv)
    app.setStyle("Fusion")
    app.setStyleSheet(DARK_THEME)

    win = MainWindow()
    win.show()
    sys.exit(app.exec_())


if __name__ == "__main__":
    main()
