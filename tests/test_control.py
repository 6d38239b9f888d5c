import io
import queue
import sys

import pytest
import stem
import stem.connection
import stem.socket
import stem.version

from stem.response import ControlMessage

import hsvanguards.control
import hsvanguards.logger

from hsvanguards.control import ControlChannel, SecretPassword
from hsvanguards.control import try_close_circuit
from hsvanguards.errors import AuthError, ChannelError

hsvanguards.logger.loglevel = "WARN"

class MockSocket:
  """ Hands out canned tor replies in order, one per recv(). """
  def __init__(self):
    self.sent = []
    self.incoming = queue.Queue()
    self.alive = True

  def push(self, text):
    self.incoming.put(ControlMessage.from_str(text))

  def send(self, text):
    if not self.alive:
      raise stem.SocketClosed("Closed")
    self.sent.append(text)

  def recv(self):
    msg = self.incoming.get()
    if msg is None:
      raise stem.SocketClosed("Closed")
    return msg

  def is_alive(self):
    return self.alive

  def close(self):
    self.alive = False
    self.incoming.put(None)

def started_channel(sock):
  channel = ControlChannel(sock)
  channel._start_reader()
  return channel

def test_commands_before_reader():
  sock = MockSocket()
  channel = ControlChannel(sock)
  sock.push("250-version=0.4.8.9\r\n250 OK\r\n")
  assert channel.get_info("version") == {"version": "0.4.8.9"}
  assert sock.sent == ["GETINFO version"]

def test_events_and_replies_demuxed():
  sock = MockSocket()
  channel = started_channel(sock)

  sock.push("650 BW 100 200\r\n")
  sock.push("250 OK\r\n")
  channel.set_conf("HSLayer2Nodes", "AAAA,BBBB")
  assert sock.sent[-1] == 'SETCONF HSLayer2Nodes="AAAA,BBBB"'

  event = channel.next_event(5)
  assert event.type == "BW"
  assert event.read == 100
  assert event.written == 200
  assert channel.next_event(0.01) is None

  sock.push("250 OK\r\n")
  assert channel.subscribe(["CIRC", "BW", "CIRC"]) == ["CIRC", "BW"]
  assert sock.sent[-1] == "SETEVENTS CIRC BW"
  channel.close()

def test_command_errors():
  sock = MockSocket()
  channel = started_channel(sock)

  sock.push("552 Unrecognized option: Unknown option 'HSLayer2Nodes'\r\n")
  with pytest.raises(stem.InvalidArguments):
    channel.set_conf("HSLayer2Nodes", "AAAA")

  sock.push("552 Unknown circuit \"99\"\r\n")
  assert not try_close_circuit(channel, "99")

  sock.push("250 OK\r\n")
  assert try_close_circuit(channel, "100")
  assert sock.sent[-1] == "CLOSECIRCUIT 100"

  sock.push("551 Unable to write configuration to disk.\r\n")
  with pytest.raises(stem.OperationFailed):
    channel.save_conf()
  channel.close()

def test_conf_and_version():
  sock = MockSocket()
  channel = started_channel(sock)

  sock.push("250 DataDirectory=/var/lib/tor\r\n")
  assert channel.get_conf("datadirectory") == "/var/lib/tor"

  sock.push("250 ExcludeNodes\r\n")
  assert channel.get_conf("ExcludeNodes", "") == ""

  sock.push("250-version=0.4.8.9 (git-1234)\r\n250 OK\r\n")
  assert channel.get_version() == stem.version.Version("0.4.8.9")
  channel.close()

def test_setconf_quoting():
  sock = MockSocket()
  channel = started_channel(sock)
  sock.push("250 OK\r\n")
  channel.set_conf("GuardLifetime", '30 "days"')
  assert sock.sent[-1] == 'SETCONF GuardLifetime="30 \\"days\\""'
  channel.close()

def test_closed_channel():
  sock = MockSocket()
  channel = started_channel(sock)
  sock.close()
  with pytest.raises(ChannelError):
    channel.next_event(5)
  with pytest.raises(ChannelError):
    channel.set_conf("NumEntryGuards", "2")
  assert not channel.is_alive()

def test_full_event_queue_drops(monkeypatch):
  monkeypatch.setattr(hsvanguards.control, "EVENT_QUEUE_BLOCK_SECS", 0.01)
  sock = MockSocket()
  channel = ControlChannel(sock, event_queue_size=1)
  channel._put_event("first")
  channel._put_event("second")
  assert channel.dropped_events == 1
  assert channel.next_event(0.01) == "first"

def test_secret_password():
  passwd = SecretPassword("hunter2")
  assert passwd
  assert passwd.reveal() == "hunter2"
  passwd.wipe()
  assert not passwd

def test_auth_password(monkeypatch):
  calls = []
  def authenticate(controller, password=None, **kwargs):
    calls.append(password)
    if password is None:
      raise stem.connection.MissingPassword("Need a password")
    if password != "hunter2":
      raise stem.connection.IncorrectPassword("Nope")

  monkeypatch.setattr(stem.connection, "authenticate", authenticate)

  sock = MockSocket()
  channel = ControlChannel(sock)
  passwd = SecretPassword("hunter2")
  channel.authenticate(passwd)
  assert calls == [None, "hunter2"]
  assert not passwd
  channel.close()

  channel = ControlChannel(MockSocket())
  with pytest.raises(AuthError):
    channel.authenticate(SecretPassword("wrong"))

  monkeypatch.setattr(sys, "stdin", io.StringIO())
  channel = ControlChannel(MockSocket())
  with pytest.raises(AuthError):
    channel.authenticate()

def test_auth_cookie_wipes_password(monkeypatch):
  calls = []
  def authenticate(controller, password=None, **kwargs):
    calls.append(password)
  monkeypatch.setattr(stem.connection, "authenticate", authenticate)

  channel = ControlChannel(MockSocket())
  passwd = SecretPassword("hunter2")
  channel.authenticate(passwd)
  assert calls == [None]
  assert not passwd
  channel.close()

  def refuse(controller, password=None, **kwargs):
    raise stem.connection.AuthenticationFailure("No way")
  monkeypatch.setattr(stem.connection, "authenticate", refuse)
  passwd = SecretPassword("hunter2")
  with pytest.raises(AuthError):
    ControlChannel(MockSocket()).authenticate(passwd)
  assert not passwd

def test_auth_socket_failure(monkeypatch):
  def authenticate(controller, password=None, **kwargs):
    raise stem.SocketClosed("Gone")
  monkeypatch.setattr(stem.connection, "authenticate", authenticate)
  with pytest.raises(ChannelError):
    ControlChannel(MockSocket()).authenticate()

def test_connect_failure(monkeypatch):
  def control_port(address, port):
    raise stem.SocketError("Connection refused")
  monkeypatch.setattr(stem.socket, "ControlPort", control_port)
  with pytest.raises(ChannelError):
    ControlChannel.connect(("127.0.0.1", 9051))
