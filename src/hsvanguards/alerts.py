""" Detector alerts, and rate limiting of how often we log them. """
import collections
import enum
import time

from .logger import plog

# At most this many alerts of one kind are logged per window
ALERT_RATE_LIMIT = 10
ALERT_RATE_WINDOW_SECS = 60

# Number of recent alerts kept for status queries
_RECENT_ALERTS = 100

class AlertKind(enum.Enum):
  BandwidthLimitExceeded = "CIRC_MAX_MEGABYTES"
  AgeLimitExceeded = "CIRC_MAX_AGE_HOURS"
  DescriptorOversized = "CIRC_MAX_HSDESC_KILOBYTES"
  ServiceIntroOversized = "CIRC_MAX_SERV_INTRO_KILOBYTES"
  DroppedCells = "CIRC_MAX_DROPPED_CELLS"
  RendezvousOveruse = "USE_MAX_USE_TO_BW_RATIO"
  ConnectionDisconnected = "CONN_MAX_DISCONNECTED_SECS"
  CircuitsDisconnected = "CIRC_MAX_DISCONNECTED_SECS"

class Alert:
  def __init__(self, kind, circ_id, detail, severity="NOTICE",
               created_at=None):
    self.kind = kind
    self.circ_id = circ_id
    self.detail = detail
    self.severity = severity
    if created_at is None:
      created_at = time.time()
    self.created_at = created_at

  def __str__(self):
    if self.circ_id is None:
      return self.kind.name+": "+self.detail
    return "Circ "+str(self.circ_id)+" "+self.kind.name+": "+self.detail

class AlertLog:
  """ Logs alerts, at most ALERT_RATE_LIMIT of each kind per window.

      Suppressed alerts are still counted, and the count is reported when
      the next window opens.
  """
  def __init__(self):
    self.recent = collections.deque(maxlen=_RECENT_ALERTS)
    self.window_start = {} # key=AlertKind val=timestamp
    self.window_count = {}
    self.suppressed = {}

  def emit(self, alert):
    self.recent.append(alert)
    kind = alert.kind
    now = alert.created_at

    if kind not in self.window_start or \
       now - self.window_start[kind] >= ALERT_RATE_WINDOW_SECS:
      if self.suppressed.get(kind):
        plog(alert.severity, "Suppressed "+str(self.suppressed[kind])+
             " "+kind.name+" alerts in the last "+
             str(ALERT_RATE_WINDOW_SECS)+" seconds")
      self.window_start[kind] = now
      self.window_count[kind] = 0
      self.suppressed[kind] = 0

    if self.window_count[kind] < ALERT_RATE_LIMIT:
      self.window_count[kind] += 1
      plog(alert.severity, str(alert))
      return True

    self.suppressed[kind] += 1
    return False

  def recent_alerts(self, kind=None):
    if kind is None:
      return list(self.recent)
    return [a for a in self.recent if a.kind == kind]
