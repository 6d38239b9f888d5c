""" Exceptions shared by the controller components. """

class VanguardsError(Exception):
  "Base class for all hsvanguards errors"
  pass

class ChannelError(VanguardsError):
  "The control connection failed: closed, EOF, malformed reply or timeout"
  pass

class AuthError(VanguardsError):
  "Tor rejected our credentials. Never retried."
  pass

class ConsensusParseError(VanguardsError):
  "Directory data from tor was malformed. The prior snapshot is kept."
  pass

class InsufficientRelaysError(VanguardsError):
  "Not enough eligible relays remain after applying exclusions"
  def __init__(self, wanted, available, msg=None):
    self.wanted = wanted
    self.available = available
    if msg is None:
      msg = "Wanted "+str(wanted)+" relays, but only "+str(available)+\
            " are eligible"
    VanguardsError.__init__(self, msg)

class StateFormatError(VanguardsError):
  "The persisted state file is corrupt or of an unknown version"
  pass

class ConfigValidationError(VanguardsError):
  "Out-of-range or contradictory settings"
  pass
