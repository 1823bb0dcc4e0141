"""
VPS Panel - Periodic metrics push over Socket.IO
Each connected client gets its own background task; the task owns a stop
event that is set when the client disconnects.
"""

import logging
import threading

logger = logging.getLogger('vps-panel.realtime')

UPDATE_EVENT = 'systemUpdate'
ERROR_EVENT = 'error'


class MetricsPusher:
    def __init__(self, socketio, collect, interval=5):
        self.socketio = socketio
        self.collect = collect
        self.interval = interval
        self._stops = {}
        self._lock = threading.Lock()

    def start(self, sid):
        stop = threading.Event()
        with self._lock:
            previous = self._stops.pop(sid, None)
            self._stops[sid] = stop
        if previous is not None:
            previous.set()
        self.socketio.start_background_task(self._run, sid, stop)
        logger.info("Client %s connected, pushing metrics every %ss", sid, self.interval)

    def stop(self, sid):
        with self._lock:
            stop = self._stops.pop(sid, None)
        if stop is not None:
            stop.set()
            logger.info("Client %s disconnected", sid)

    def active(self):
        with self._lock:
            return sorted(self._stops)

    def stop_all(self):
        with self._lock:
            stops = list(self._stops.values())
            self._stops.clear()
        for stop in stops:
            stop.set()

    def _run(self, sid, stop):
        while not stop.is_set():
            try:
                self.socketio.emit(UPDATE_EVENT, self.collect(), to=sid)
            except Exception as e:
                logger.warning("Metrics collection failed for %s: %s", sid, e)
                self.socketio.emit(ERROR_EVENT, {'message': str(e)}, to=sid)
            if stop.wait(self.interval):
                break
