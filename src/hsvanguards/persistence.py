""" Guard state on disk.

    The file format is the pickle that older vanguards releases wrote:
    a vanguards.vanguards.VanguardState object with layer2 and layer3 lists
    of vanguards.vanguards.GuardNode objects. We write that object graph
    opcode by opcode, so that the file does not depend on our own class
    names, and we read it back with an Unpickler that can only construct a
    handful of whitelisted record classes.
"""
import io
import os
import pickle
import struct
import time

from .errors import StateFormatError
from .logger import plog
from .vanguards import GuardNode, VanguardStateSnapshot

PICKLE_REVISION = 1

# Clock skew tolerated on chosen_at, and the furthest expiry we accept.
_MAX_CLOCK_SKEW_SECS = 60*60
_MAX_EXPIRY_SECS = 365*24*60*60

_HEX_DIGITS = frozenset("0123456789ABCDEFabcdef")

def is_valid_fingerprint(fp):
  return isinstance(fp, str) and len(fp) == 40 and set(fp) <= _HEX_DIGITS

class _Record:
  """ Attribute bag for one of the legacy classes. """
  def __init__(self, *args):
    if args:
      raise pickle.UnpicklingError("Unexpected constructor arguments")

class _LegacyVanguardState(_Record): pass
class _LegacyGuardNode(_Record): pass
class _LegacyRendGuard(_Record): pass
class _LegacyRendUseCount(_Record): pass

def _reconstructor(cls, base, state):
  if base is not object or not issubclass(cls, _Record):
    raise pickle.UnpicklingError("Unsupported reconstructor call")
  return cls()

_ALLOWED_GLOBALS = {
  ("vanguards.vanguards", "VanguardState"): _LegacyVanguardState,
  ("vanguards.vanguards", "GuardNode"): _LegacyGuardNode,
  ("vanguards.rendguard", "RendGuard"): _LegacyRendGuard,
  ("vanguards.rendguard", "RendUseCount"): _LegacyRendUseCount,
  ("copyreg", "_reconstructor"): _reconstructor,
  ("copy_reg", "_reconstructor"): _reconstructor,
  ("builtins", "object"): object,
  ("__builtin__", "object"): object,
}

class _StateUnpickler(pickle.Unpickler):
  def find_class(self, module, name):
    if (module, name) in _ALLOWED_GLOBALS:
      return _ALLOWED_GLOBALS[(module, name)]
    raise pickle.UnpicklingError("Refusing to load "+module+"."+name)

def _fields(obj):
  if isinstance(obj, dict):
    return obj
  if isinstance(obj, _Record):
    return obj.__dict__
  raise StateFormatError("Expected an object, got "+type(obj).__name__)

def _guard_from_legacy(obj, layer, now):
  fields = _fields(obj)
  try:
    idhex = fields["idhex"]
    chosen_at = float(fields["chosen_at"])
    expires_at = float(fields["expires_at"])
  except (KeyError, TypeError, ValueError) as e:
    raise StateFormatError("Bad "+layer+" guard entry: "+str(e))

  if not is_valid_fingerprint(idhex):
    raise StateFormatError("Invalid fingerprint in "+layer+": "+repr(idhex))
  if chosen_at > now + _MAX_CLOCK_SKEW_SECS:
    raise StateFormatError("Future chosen_at in "+layer+" guard "+idhex)
  if expires_at > now + _MAX_CLOCK_SKEW_SECS + _MAX_EXPIRY_SECS:
    raise StateFormatError("Unreasonable expires_at in "+layer+" guard "+
                           idhex)
  return GuardNode(idhex.upper(), chosen_at, expires_at)

def decode_state(data, now=None):
  """ Parse legacy pickle bytes into a VanguardStateSnapshot. """
  if now is None:
    now = time.time()
  try:
    obj = _StateUnpickler(io.BytesIO(data)).load()
  except Exception as e:
    # Unpickler raises nearly anything on garbage input
    raise StateFormatError("Cannot parse state file: "+str(e))

  fields = _fields(obj)
  revision = fields.get("pickle_revision")
  if revision != PICKLE_REVISION:
    raise StateFormatError("Unknown state file revision: "+repr(revision))

  layers = {}
  for layer in ("layer2", "layer3"):
    guards = fields.get(layer, [])
    if not isinstance(guards, list):
      raise StateFormatError(layer+" is not a list")
    layers[layer] = tuple(_guard_from_legacy(g, layer, now) for g in guards)
    idhexes = [g.idhex for g in layers[layer]]
    if len(set(idhexes)) != len(idhexes):
      raise StateFormatError("Duplicate guard in "+layer)

  return VanguardStateSnapshot(revision, layers["layer2"], layers["layer3"])

class _LegacyWriter:
  """ Emits protocol 2 opcodes for the legacy object graph. """
  def __init__(self):
    self.out = io.BytesIO()

  def write(self, data):
    self.out.write(data)

  def instance(self, module, name, attrs):
    self.write(pickle.GLOBAL+(module+"\n"+name+"\n").encode("ascii"))
    self.write(pickle.EMPTY_TUPLE+pickle.NEWOBJ)
    self.dict(attrs)
    self.write(pickle.BUILD)

  def dict(self, items):
    self.write(pickle.EMPTY_DICT)
    if items:
      self.write(pickle.MARK)
      for (key, value) in items:
        self.value(key)
        self.value(value)
      self.write(pickle.SETITEMS)

  def list(self, values):
    self.write(pickle.EMPTY_LIST)
    if values:
      self.write(pickle.MARK)
      for v in values:
        self.value(v)
      self.write(pickle.APPENDS)

  def value(self, v):
    if isinstance(v, GuardNode):
      self.instance("vanguards.vanguards", "GuardNode",
                    [("idhex", v.idhex),
                     ("chosen_at", float(v.chosen_at)),
                     ("expires_at", float(v.expires_at))])
    elif isinstance(v, str):
      data = v.encode("utf-8")
      self.write(pickle.BINUNICODE+struct.pack("<I", len(data))+data)
    elif isinstance(v, float):
      self.write(pickle.BINFLOAT+struct.pack(">d", v))
    elif isinstance(v, int):
      self.write(pickle.BININT+struct.pack("<i", v))
    elif isinstance(v, (list, tuple)):
      self.list(v)
    elif isinstance(v, dict):
      self.dict(list(v.items()))
    else:
      raise TypeError("Cannot encode "+type(v).__name__)

def encode_state(snapshot, state_file):
  w = _LegacyWriter()
  w.write(pickle.PROTO+bytes([2]))
  w.write(pickle.GLOBAL+b"vanguards.vanguards\nVanguardState\n")
  w.write(pickle.EMPTY_TUPLE+pickle.NEWOBJ)
  w.write(pickle.EMPTY_DICT+pickle.MARK)
  w.value("layer2")
  w.value(list(snapshot.layer2))
  w.value("layer3")
  w.value(list(snapshot.layer3))
  w.value("state_file")
  w.value(state_file)
  w.value("rendguard")
  w.instance("vanguards.rendguard", "RendGuard",
             [("use_counts", {}), ("total_use_counts", 0.0),
              ("pickle_revision", PICKLE_REVISION)])
  w.value("pickle_revision")
  w.value(snapshot.version)
  w.write(pickle.SETITEMS+pickle.BUILD+pickle.STOP)
  return w.out.getvalue()

class PersistenceStore:
  def __init__(self, path):
    self.path = path

  def load(self):
    """ Returns the stored snapshot, or None if there is no state file. """
    try:
      with open(self.path, "rb") as f:
        data = f.read()
    except FileNotFoundError:
      return None
    snapshot = decode_state(data)
    plog("INFO", "Loaded "+str(len(snapshot.layer2))+" layer2 and "+
         str(len(snapshot.layer3))+" layer3 guards from "+self.path)
    return snapshot

  def save(self, snapshot):
    data = encode_state(snapshot, self.path)
    tmp_path = self.path+".tmp"
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
      with os.fdopen(fd, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
      os.chmod(tmp_path, 0o600)
      os.replace(tmp_path, self.path)
    except Exception:
      if os.path.exists(tmp_path):
        os.unlink(tmp_path)
      raise
