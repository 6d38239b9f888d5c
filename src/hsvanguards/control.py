""" The tor control connection.

    stem does the wire framing: ControlSocket.recv() hands us one complete
    (possibly multi-line) reply at a time. On top of that we run a single
    reader thread that sorts asynchronous 650 events into a bounded queue
    and everything else into the reply queue of the one outstanding
    command.
"""
import getpass
import queue
import sys
import threading

import stem
import stem.connection
import stem.response
import stem.response.events
import stem.socket
import stem.version

from .errors import AuthError, ChannelError
from .logger import plog

from . import __version__

# Maximum number of parsed events waiting for the controller
EVENT_QUEUE_SIZE = 10000

# How long the reader waits on a full event queue before dropping the event
EVENT_QUEUE_BLOCK_SECS = 5

# How long a command may wait for its reply
REPLY_TIMEOUT_SECS = 60

# We only want to know that a new consensus arrived. The consensus itself
# is fetched with GETINFO ns/all afterwards.
stem.response.events.PARSE_NEWCONSENSUS_EVENTS = False

class SecretPassword:
  """ A control port password that can be wiped once it has been used.

      Strings are immutable, so the only copy we control is this buffer.
  """
  def __init__(self, passwd):
    if isinstance(passwd, str):
      passwd = passwd.encode("utf-8")
    self._buf = bytearray(passwd)

  def __bool__(self):
    return len(self._buf) > 0

  def reveal(self):
    return self._buf.decode("utf-8")

  def wipe(self):
    for i in range(len(self._buf)):
      self._buf[i] = 0
    del self._buf[:]

class ControlChannel:
  """ One authenticated control connection.

      Commands are strictly sequential: send_command() holds a lock until the
      reply for its command arrives. Events are only ever consumed through
      next_event(). Once a ChannelError has been raised, the channel is dead
      and a new one must be connected.
  """
  def __init__(self, control_socket, event_queue_size=None):
    if event_queue_size is None:
      event_queue_size = EVENT_QUEUE_SIZE
    self._socket = control_socket
    self._replies = queue.Queue()
    self._events = queue.Queue(maxsize=event_queue_size)
    self._msg_lock = threading.Lock()
    self._reader = None
    self._reader_error = None
    self.dropped_events = 0

  @staticmethod
  def connect(endpoint):
    """ endpoint is either an (address, port) tuple or a socket path. """
    try:
      if isinstance(endpoint, tuple):
        sock = stem.socket.ControlPort(endpoint[0], int(endpoint[1]))
      else:
        sock = stem.socket.ControlSocketFile(endpoint)
    except stem.SocketError as e:
      raise ChannelError("Unable to connect to tor at "+str(endpoint)+": "+
                         str(e))
    return ControlChannel(sock)

  def authenticate(self, password=None):
    """ Authenticate with whatever tor offers us.

        Cookie and null auth need no input from us. If tor wants a password,
        the supplied SecretPassword is used once. It is wiped before we
        return either way.
    """
    try:
      try:
        stem.connection.authenticate(self._socket)
      except stem.connection.MissingPassword:
        if not password:
          if not sys.stdin.isatty():
            raise AuthError("Tor requires a control password, "+
                            "but none was configured")
          password = SecretPassword(getpass.getpass("Controller password: "))
        stem.connection.authenticate(self._socket,
                                     password=password.reveal())
    except stem.connection.PasswordAuthFailed:
      raise AuthError("Unable to authenticate, password is incorrect")
    except stem.connection.AuthenticationFailure as e:
      if not self._socket.is_alive():
        raise ChannelError("Control connection closed during "+
                           "authentication: "+str(e))
      raise AuthError("Unable to authenticate: "+str(e))
    except stem.SocketError as e:
      raise ChannelError("Control connection failed during "+
                         "authentication: "+str(e))
    finally:
      # Whether or not tor asked for it, the password is done with
      if password is not None:
        password.wipe()

    self._start_reader()

  def _start_reader(self):
    self._reader = threading.Thread(target=self._reader_loop,
                                    name="hsvanguards control reader")
    self._reader.daemon = True
    self._reader.start()

  def _reader_loop(self):
    while True:
      try:
        msg = self._socket.recv()
      except (stem.SocketError, stem.ProtocolError) as e:
        self._reader_error = ChannelError("Control connection lost: "+str(e))
        self._replies.put(self._reader_error)
        try:
          self._events.put_nowait(self._reader_error)
        except queue.Full:
          pass # next_event() checks _reader_error once the queue drains
        return

      if msg.content()[-1][0] == "650":
        try:
          stem.response.convert("EVENT", msg)
        except (ValueError, stem.ProtocolError) as e:
          plog("INFO", "Ignoring unparseable event: "+str(e))
          continue
        self._put_event(msg)
      else:
        self._replies.put(msg)

  # Block for a while so a slow consumer slows the wire down, but never
  # forever: the command path needs this thread to keep reading replies.
  def _put_event(self, event):
    try:
      self._events.put(event, timeout=EVENT_QUEUE_BLOCK_SECS)
    except queue.Full:
      self.dropped_events += 1
      if self.dropped_events % 1000 == 1:
        plog("WARN", "Event queue full. Dropped "+str(self.dropped_events)+
                     " events so far.")

  def next_event(self, timeout=None):
    """ Returns the next event, or None if timeout expired first. """
    try:
      event = self._events.get(timeout=timeout)
    except queue.Empty:
      if self._reader_error:
        raise self._reader_error
      return None
    if isinstance(event, ChannelError):
      raise event
    return event

  def send_command(self, text):
    with self._msg_lock:
      if self._reader_error:
        raise self._reader_error
      try:
        self._socket.send(text)
        if self._reader is None:
          return self._socket.recv()
      except (stem.SocketError, stem.ProtocolError) as e:
        raise ChannelError("Failed to send '"+text.split(" ")[0]+"': "+
                           str(e))

      try:
        reply = self._replies.get(timeout=REPLY_TIMEOUT_SECS)
      except queue.Empty:
        self._reader_error = ChannelError("Timed out waiting for reply to "+
                                          text.split(" ")[0])
        raise self._reader_error
      if isinstance(reply, ChannelError):
        raise reply
      return reply

  def get_info(self, *keys):
    reply = self.send_command("GETINFO "+" ".join(keys))
    stem.response.convert("GETINFO", reply)
    ret = {}
    for key, value in reply.entries.items():
      if isinstance(value, bytes):
        value = value.decode("utf-8", "replace")
      ret[key] = value
    return ret

  def get_conf(self, key, default=None):
    reply = self.send_command("GETCONF "+key)
    stem.response.convert("GETCONF", reply)
    for k, values in reply.entries.items():
      if k.lower() == key.lower() and values:
        return values[0]
    return default

  def set_conf(self, key, value):
    value = str(value).replace("\\", "\\\\").replace('"', '\\"')
    _check_reply(self.send_command("SETCONF "+key+"=\""+value+"\""))

  def save_conf(self):
    _check_reply(self.send_command("SAVECONF"))

  def signal(self, sig):
    _check_reply(self.send_command("SIGNAL "+sig))

  def close_circuit(self, circ_id):
    _check_reply(self.send_command("CLOSECIRCUIT "+str(circ_id)))

  def subscribe(self, event_kinds):
    kinds = []
    for k in event_kinds:
      if k not in kinds:
        kinds.append(k)
    _check_reply(self.send_command("SETEVENTS "+" ".join(kinds)))
    return kinds

  def get_version(self):
    return stem.version.Version(self.get_info("version")["version"].split()[0])

  def is_alive(self):
    return self._reader_error is None and self._socket.is_alive()

  def close(self):
    self._socket.close()

def _check_reply(reply):
  stem.response.convert("SINGLELINE", reply)
  if reply.is_ok():
    return reply
  if reply.code == "552":
    raise stem.InvalidArguments(reply.code, reply.message)
  if reply.code in ("512", "513", "553"):
    raise stem.InvalidRequest(reply.code, reply.message)
  raise stem.OperationFailed(reply.code, reply.message)

def connect_and_authenticate(control_ip, control_port, control_socket="",
                             passwd=None):
  if control_socket != "":
    channel = ControlChannel.connect(control_socket)
  else:
    channel = ControlChannel.connect((control_ip, control_port))

  try:
    channel.authenticate(passwd)
  except Exception:
    channel.close()
    raise

  plog("NOTICE", "Vanguards %s connected to Tor %s using stem %s",
       __version__, channel.get_version(), stem.__version__)
  return channel

def try_close_circuit(channel, circ_id):
  try:
    channel.close_circuit(circ_id)
    plog("INFO", "We force-closed circuit "+str(circ_id))
    return True
  except (stem.InvalidRequest, stem.InvalidArguments) as e:
    plog("INFO", "Failed to close circuit "+str(circ_id)+": "+str(e.message))
    return False
