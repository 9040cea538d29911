"""
Web Server for MultiDeck - Local Network Deck Monitor.

Serves a read-only view of every deck (waveform, BPM, position, pitch)
over the local network, so the state can be watched from a phone or a
second screen.

Usage:
    shared = SharedSessionState()
    server = DeckWebServer(shared)
    server.start()
    # in the caller's poll loop:
    shared.update_from_snapshots(registry.poll())

    Devices on the same network can access the monitor at:
        http://<your-local-ip>:<port>
"""

import socket
import logging
import threading
from typing import Optional, List, Dict, Any

from flask import Flask, jsonify, Response, abort

from config import MONITOR_PORT, POLL_INTERVAL

logger = logging.getLogger("MultiDeck.WebServer")


def get_local_ip(fallback="127.0.0.1"):
    """
    Address other devices on the LAN can reach this machine at.

    A UDP "connect" sends nothing; it only makes the OS pick the outgoing
    interface, whose address is then read back.
    """
    probe = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        probe.settimeout(0.5)
        probe.connect(("8.8.8.8", 80))
        return probe.getsockname()[0]
    except OSError:
        return fallback
    finally:
        probe.close()


# =========================================================================
# SHARED STATE (updated by the poll loop, read by web server)
# =========================================================================

class SharedSessionState:
    """Thread-safe copy of the latest snapshots, shared with the web server."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: List[Dict[str, Any]] = []

    def update_from_snapshots(self, snapshots):
        """Replace the published state with freshly polled snapshots."""
        sessions = [snap.to_dict() for snap in snapshots]
        with self._lock:
            self._sessions = sessions

    def get_sessions(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._sessions)

    def get_session(self, handle) -> Optional[Dict[str, Any]]:
        with self._lock:
            for session in self._sessions:
                if session['handle'] == handle:
                    return session
        return None


# =========================================================================
# HTML PAGE (embedded)
# =========================================================================

MONITOR_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>MultiDeck Monitor</title>
<style>
  * { margin: 0; padding: 0; box-sizing: border-box; }
  body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
         background: #0d1117; color: #e6edf3; padding: 12px; }
  h1 { font-size: 18px; margin-bottom: 12px; }
  .deck { background: #161b22; border-radius: 8px; padding: 10px; margin-bottom: 10px; }
  .name { font-weight: 600; }
  .info { color: #7d8590; font-size: 13px; margin-top: 4px; }
  .failed .info { color: #f85149; }
  canvas { width: 100%; height: 60px; display: block; margin-top: 6px; }
</style>
</head>
<body>
<h1>MultiDeck</h1>
<div id="decks"></div>
<script>
function fmt(s) {
  s = Math.max(0, Math.floor(s));
  return Math.floor(s / 60) + ':' + String(s % 60).padStart(2, '0');
}
function info(d) {
  if (d.state === 'FAILED') return 'Failed: ' + d.error_kind + ' ' + (d.error_message || '');
  if (d.state === 'UNLOADED' || d.state === 'LOADING') return 'Loading...';
  const bpm = d.tempo_known ? d.bpm.toFixed(0) : '--';
  return d.state + ' | BPM: ' + bpm + ' | Length: ' + fmt(d.duration_seconds) +
         ' | Remaining: ' + fmt(d.remaining_seconds) + ' | Pitch: ' + d.pitch_semitones.toFixed(1);
}
function draw(canvas, d) {
  const ctx = canvas.getContext('2d');
  const w = canvas.width = canvas.clientWidth, h = canvas.height = canvas.clientHeight;
  ctx.clearRect(0, 0, w, h);
  if (!d.waveform) return;
  const bw = w / d.waveform.length;
  ctx.fillStyle = '#58a6ff';
  d.waveform.forEach((a, i) => { const bh = a * h; ctx.fillRect(i * bw, (h - bh) / 2, bw, bh); });
  if (d.duration_seconds > 0) {
    ctx.fillStyle = '#ff3333';
    ctx.fillRect(w * d.position_seconds / d.duration_seconds, 0, 2, h);
  }
}
async function refresh() {
  try {
    const decks = await (await fetch('/api/sessions')).json();
    const root = document.getElementById('decks');
    root.innerHTML = '';
    decks.forEach(d => {
      const el = document.createElement('div');
      el.className = 'deck' + (d.state === 'FAILED' ? ' failed' : '');
      el.innerHTML = '<div class="name"></div><div class="info"></div><canvas></canvas>';
      el.querySelector('.name').textContent = d.name;
      el.querySelector('.info').textContent = info(d);
      root.appendChild(el);
      draw(el.querySelector('canvas'), d);
    });
  } catch (e) {}
}
setInterval(refresh, __POLL_MS__);
refresh();
</script>
</body>
</html>""".replace("__POLL_MS__", str(int(POLL_INTERVAL * 1000 * 5)))


# =========================================================================
# FLASK APP
# =========================================================================

def create_flask_app(shared_state: SharedSessionState):
    """
    Build the monitor app. Every route is a read of `shared_state`.

    Routes:
        /                       HTML page that polls the API
        /api/sessions           all decks, in registry order
        /api/sessions/<handle>  one deck, 404 if unknown
    """
    app = Flask(__name__)
    app.logger.setLevel(logging.WARNING)
    # No per-request log lines
    logging.getLogger('werkzeug').setLevel(logging.ERROR)

    @app.route('/')
    def index():
        return Response(MONITOR_HTML, mimetype='text/html')

    @app.route('/api/sessions')
    def api_sessions():
        return jsonify(shared_state.get_sessions())

    @app.route('/api/sessions/<handle>')
    def api_session(handle):
        session = shared_state.get_session(handle)
        if session is None:
            abort(404)
        return jsonify(session)

    return app


# =========================================================================
# SERVER MANAGER
# =========================================================================

class DeckWebServer:
    """
    Runs the monitor app on a background thread.

    Usage:
        server = DeckWebServer(shared)
        url = server.start()    # returns immediately
        ...
        server.stop()           # blocks until the thread has exited
    """

    def __init__(self, shared_state: SharedSessionState, port: int = MONITOR_PORT, host: str = '0.0.0.0'):
        self.shared_state = shared_state
        self.host = host
        self.port = port
        self._server = None
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> str:
        """Bind the port and start serving. Returns the monitor URL."""
        if self.running:
            return self.get_url()

        # Needs a server object with shutdown(); app.run() has none
        from werkzeug.serving import make_server
        self._server = make_server(self.host, self.port, create_flask_app(self.shared_state),
                                   threaded=True)
        # Port 0 asks the OS for a free port; report the one actually bound
        self.port = self._server.server_port

        self._thread = threading.Thread(target=self._serve, name="deck-monitor", daemon=True)
        self._thread.start()

        logger.info(f"Deck monitor available at: {self.get_url()}")
        return self.get_url()

    def _serve(self):
        try:
            self._server.serve_forever()
        except Exception as e:
            logger.error(f"Monitor server crashed: {e}")
        logger.info("Monitor server stopped")

    def stop(self, timeout: float = 2.0):
        """Shut the server down and wait for its thread."""
        if self._server is None:
            return
        self._server.shutdown()
        if self._thread is not None:
            self._thread.join(timeout)
        self._server.server_close()
        self._server = None
        self._thread = None

    def get_url(self) -> str:
        if not self.running:
            return ""
        return f"http://{get_local_ip()}:{self.port}"
