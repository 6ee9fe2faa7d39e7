"""
Interfaces to the external services and a newline-delimited JSON/TCP link.

Every message is one JSON object per line:
    {"type": "CALL", "service": ..., "request_id": ..., "payload": {...}}
    {"type": "RESPONSE", "request_id": ..., "payload": {...}}
    {"type": "PUBLISH", "topic": ..., "payload": {...}}

Service callbacks run on the connection's receive thread. Callers that touch
control-thread state must hand the result over through a ControlQueue.
"""

import abc
import itertools
import json
import logging
import socket
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from .pose_utils import EXTERNAL, Pose, convert_pose


DEFAULT_TOPICS = {
    "joint_commands": "/joint_commands",
    "twist": "/servo_node/delta_twist_cmds_unity",
    "joint_jog": "/unity/joint_jog",
    "collision_object": "/collision_object",
}


@dataclass
class MotionResult:
    success: bool
    message: str = ""
    trajectory: Optional[List[List[float]]] = None


class RegistrationClient(abc.ABC):
    @abc.abstractmethod
    def request_registration(self, master_wire: Dict, scan_wire: Dict,
                             callback: Callable[[Optional[List[float]]], None]):
        """Callback receives 16 row-major floats, or None on error/timeout."""
        pass


class MotionExecutor(abc.ABC):
    @abc.abstractmethod
    def move_to_pose(self, pose: Pose, callback: Callable[[MotionResult], None]):
        pass


class JointCommandPublisher(abc.ABC):
    @abc.abstractmethod
    def publish_joints(self, names: Sequence[str], positions: Sequence[float]):
        pass


class TwistPublisher(abc.ABC):
    @abc.abstractmethod
    def publish_twist(self, linear: Sequence[float], angular: Sequence[float]):
        pass


class JointJogPublisher(abc.ABC):
    @abc.abstractmethod
    def publish_jog(self, name: str, velocity: float):
        pass


class CollisionObjectPublisher(abc.ABC):
    @abc.abstractmethod
    def publish_collision_object(self, object_id: str, descriptor: Dict, pose: Pose):
        pass


@dataclass
class _PendingCall:
    callback: Callable[[Optional[Dict]], None]
    deadline: float


class JsonLineConnection:
    """Newline-delimited JSON over one TCP socket with request/response matching."""

    def __init__(self, host: str = "127.0.0.1", port: int = 9090, timeout: float = 10.0,
                 connect_timeout: float = 1.0):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self.logger = logging.getLogger(__name__)

        self.tcp_socket: Optional[socket.socket] = None
        self._send_lock = threading.Lock()
        self._pending_lock = threading.Lock()
        self._pending: Dict[int, _PendingCall] = {}
        self._ids = itertools.count(1)
        self._running = False
        self._receive_thread: Optional[threading.Thread] = None

    @property
    def is_connected(self) -> bool:
        return self.tcp_socket is not None

    def connect(self) -> bool:
        try:
            if self.tcp_socket:
                return True
            s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            s.settimeout(self.connect_timeout)
            s.connect((self.host, self.port))
            s.settimeout(0.1)
            self.tcp_socket = s
        except OSError as e:
            self.logger.warning(f"TCP connect to {self.host}:{self.port} failed: {e}")
            self.tcp_socket = None
            return False

        self._running = True
        self._receive_thread = threading.Thread(target=self._receive_loop, args=(s,), daemon=True)
        self._receive_thread.start()
        self.logger.info(f"Connected to service bridge at {self.host}:{self.port}")
        return True

    def close(self):
        self._running = False
        if self._receive_thread and self._receive_thread is not threading.current_thread():
            self._receive_thread.join(timeout=2.0)
        self._receive_thread = None
        self._drop_socket()
        self._fail_pending(lambda call: True)

    def _drop_socket(self, expected: Optional[socket.socket] = None):
        """Forget the current socket (only if it is `expected`, when given) and close it."""
        with self._send_lock:
            s = self.tcp_socket
            if s is None or (expected is not None and s is not expected):
                s = expected
            else:
                self.tcp_socket = None
        if s is None:
            return
        try:
            s.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        s.close()

    def _send_json(self, payload: Dict[str, Any]):
        data = (json.dumps(payload) + "\n").encode('utf-8')
        if not self.tcp_socket:
            self.connect()
        with self._send_lock:
            if not self.tcp_socket:
                raise RuntimeError("TCP not connected")
            self.tcp_socket.sendall(data)

    def expire_pending(self):
        """Fail every call whose deadline has passed."""
        now = time.monotonic()
        self._fail_pending(lambda call: call.deadline <= now)

    def call(self, service: str, payload: Dict, callback: Callable[[Optional[Dict]], None]):
        """Send a request; callback gets the response payload, or None."""
        self.expire_pending()
        request_id = next(self._ids)
        with self._pending_lock:
            self._pending[request_id] = _PendingCall(callback, time.monotonic() + self.timeout)
        try:
            self._send_json({"type": "CALL", "service": service, "request_id": request_id,
                             "payload": payload})
            self.logger.debug(f"Called {service} (request {request_id})")
        except (OSError, RuntimeError) as e:
            self.logger.error(f"Failed to call {service}: {e}")
            with self._pending_lock:
                pending = self._pending.pop(request_id, None)
            if pending:
                pending.callback(None)

    def publish(self, topic: str, payload: Dict) -> bool:
        try:
            self._send_json({"type": "PUBLISH", "topic": topic, "payload": payload})
            return True
        except (OSError, RuntimeError) as e:
            self.logger.error(f"Failed to publish on {topic}: {e}")
            return False

    def _receive_loop(self, sock: socket.socket):
        buffer = ""
        while self._running and self.tcp_socket is sock:
            try:
                data = sock.recv(65536)
                if not data:
                    self.logger.warning("Service bridge closed the connection")
                    break
                buffer += data.decode('utf-8', errors='ignore')
                while "\n" in buffer:
                    line, buffer = buffer.split("\n", 1)
                    line = line.strip()
                    if line:
                        self._handle_line(line)
            except socket.timeout:
                pass
            except OSError as e:
                if self._running:
                    self.logger.error(f"Receive error: {e}")
                break
            self.expire_pending()

        # The next call reconnects or fails instead of writing to a dead socket
        self._drop_socket(sock)
        self._fail_pending(lambda call: True)

    def _handle_line(self, line: str):
        try:
            msg = json.loads(line)
        except json.JSONDecodeError:
            self.logger.debug(f"Ignoring malformed line: {line[:80]}")
            return
        if msg.get("type") != "RESPONSE":
            return
        with self._pending_lock:
            pending = self._pending.pop(msg.get("request_id"), None)
        if pending is None:
            self.logger.debug(f"Response for unknown request {msg.get('request_id')}")
            return
        pending.callback(msg.get("payload"))

    def _fail_pending(self, predicate):
        with self._pending_lock:
            expired = [rid for rid, call in self._pending.items() if predicate(call)]
            calls = [self._pending.pop(rid) for rid in expired]
        for rid, call in zip(expired, calls):
            self.logger.warning(f"Request {rid} timed out or was dropped")
            call.callback(None)


def _pose_payload(pose: Pose) -> Dict:
    p = convert_pose(pose, EXTERNAL)
    return {
        "frame_id": p.frame,
        "position": {"x": float(p.position[0]), "y": float(p.position[1]), "z": float(p.position[2])},
        "orientation": {"x": float(p.orientation[0]), "y": float(p.orientation[1]),
                        "z": float(p.orientation[2]), "w": float(p.orientation[3])},
    }


class TcpRegistrationClient(RegistrationClient):
    def __init__(self, connection: JsonLineConnection, service: str = "/calculate_icp"):
        self.connection = connection
        self.service = service

    def request_registration(self, master_wire, scan_wire, callback):
        def on_response(payload):
            if not payload:
                callback(None)
                return
            callback(payload.get("transformation_matrix"))

        self.connection.call(self.service, {
            "master_point_cloud": master_wire,
            "current_point_cloud": scan_wire,
        }, on_response)


class TcpMotionExecutor(MotionExecutor):
    def __init__(self, connection: JsonLineConnection, service: str = "/move_robot_to_pose"):
        self.connection = connection
        self.service = service

    def move_to_pose(self, pose, callback):
        def on_response(payload):
            if payload is None:
                callback(MotionResult(False, "No response from motion service"))
                return
            callback(MotionResult(
                bool(payload.get("success", False)),
                str(payload.get("message", "")),
                payload.get("trajectory"),
            ))

        self.connection.call(self.service, {"target_pose": _pose_payload(pose)}, on_response)


class TcpTopicPublisher(JointCommandPublisher, TwistPublisher, JointJogPublisher, CollisionObjectPublisher):
    """All outgoing topic channels over one connection."""

    def __init__(self, connection: JsonLineConnection, topics: Optional[Dict[str, str]] = None):
        self.connection = connection
        self.topics = dict(DEFAULT_TOPICS)
        self.topics.update(topics or {})

    def publish_joints(self, names, positions):
        self.connection.publish(self.topics["joint_commands"], {
            "name": list(names),
            "position": [float(p) for p in positions],
        })

    def publish_twist(self, linear, angular):
        self.connection.publish(self.topics["twist"], {
            "linear": [float(v) for v in linear],
            "angular": [float(v) for v in angular],
        })

    def publish_jog(self, name, velocity):
        self.connection.publish(self.topics["joint_jog"], {
            "joint_names": [name],
            "velocities": [float(velocity)],
        })

    def publish_collision_object(self, object_id, descriptor, pose):
        self.connection.publish(self.topics["collision_object"], {
            "id": object_id,
            "operation": "add",
            "primitive": descriptor,
            "pose": _pose_payload(pose),
        })
