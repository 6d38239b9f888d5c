""" Buffer tor's own log lines and dump them when we close a circuit. """
import collections
import time

from .logger import plog

############ Logguard options #################

# Number of tor log lines to buffer
LOG_DUMP_LIMIT = 25

# Lowest tor log level to buffer (DEBUG, INFO, NOTICE, WARN, ERROR)
LOG_DUMP_LEVEL = "NOTICE"

# Have tor report protocol warnings, and log them at NOTICE
LOG_PROTOCOL_WARNS = True

_TOR_RUNLEVELS = ["DEBUG", "INFO", "NOTICE", "WARN", "ERR"]

def _tor_runlevel(level):
  if level == "ERROR":
    return "ERR"
  return level

def log_event_types():
  """ The tor log events we need for the current LOG_DUMP_LEVEL. """
  start = _TOR_RUNLEVELS.index(_tor_runlevel(LOG_DUMP_LEVEL))
  events = _TOR_RUNLEVELS[start:]
  if LOG_PROTOCOL_WARNS and "WARN" not in events:
    events.append("WARN")
  return events

class LogGuard:
  def __init__(self, controller):
    self.log_buffer = collections.deque(maxlen=LOG_DUMP_LIMIT)
    self.log_level = _TOR_RUNLEVELS.index(_tor_runlevel(LOG_DUMP_LEVEL))

    if LOG_PROTOCOL_WARNS:
      controller.set_conf("ProtocolWarnings", "1")

  def log_all_event(self, event):
    runlevel = _tor_runlevel(event.runlevel)
    if runlevel in _TOR_RUNLEVELS and \
       _TOR_RUNLEVELS.index(runlevel) >= self.log_level:
      self.log_buffer.append((event.arrived_at, runlevel, event.message))

  def log_warn_event(self, event):
    if LOG_PROTOCOL_WARNS:
      plog("NOTICE", "Tor log warn: "+event.message)

  # "when" is "Pre" before we close a circuit and "Post" once tor
  # reports it closed.
  def dump_log_queue(self, circ_id, when):
    while self.log_buffer:
      (arrived_at, runlevel, message) = self.log_buffer.popleft()
      plog("NOTICE", when+"-close CIRC ID="+str(circ_id)+" Tor log: "+
           time.strftime("%a %b %d %H:%M:%S %Y", time.localtime(arrived_at))+
           " ["+runlevel+"] "+message)

  def circ_event(self, event):
    if (event.status == "CLOSED" or event.status == "FAILED") and \
       event.reason == "REQUESTED":
      self.dump_log_queue(event.id, "Post")
