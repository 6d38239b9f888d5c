""" Simple checks against bandwidth side channels """
import stem

from . import control

from .alerts import Alert, AlertKind, AlertLog
from .logger import plog

############ BandGuard Options #################

# Kill a circuit if this many read+write bytes have been exceeded.
# Very loud application circuits could be used to introduce timing
# side channels.
# Warning: if your application has large resources that cannot be
# split up over multiple requests (such as large HTTP posts for eg:
# securedrop, or sharing large files via onionshare), you must set
# this high enough for those uploads not to get truncated!
CIRC_MAX_MEGABYTES = 0

# Kill circuits older than this many hours.
# Really old circuits will continue to use old guards after the TLS connection
# has rotated, which means they will be alone on old TLS links. This lack
# of multiplexing may allow an adversary to use netflow records to determine
# the path through the Tor network to a hidden service.
CIRC_MAX_AGE_HOURS = 24 # 1 day

# Maximum size for an hsdesc fetch (including setup+get+dropped cells)
CIRC_MAX_HSDESC_KILOBYTES = 30

# Maximum size of a service intro circuit. 0 disables.
CIRC_MAX_SERV_INTRO_KILOBYTES = 0

# Kill a built HS circuit if more than this many cells were dropped.
# Dropped cells can be injected by an adversary as a timing side channel.
CIRC_MAX_DROPPED_CELLS = 0

# Warn if Tor can't build or use circuits for this many seconds
CIRC_MAX_DISCONNECTED_SECS = 30

# Warn if Tor has no connections for this many seconds
CONN_MAX_DISCONNECTED_SECS = 15

# Close circuits that exceed a limit. If false, we only log.
CLOSE_CIRCUITS = True

############ Constants ###############
_CELL_PAYLOAD_SIZE = 509
_RELAY_HEADER_SIZE = 11
_RELAY_PAYLOAD_SIZE = _CELL_PAYLOAD_SIZE-_RELAY_HEADER_SIZE

_SECS_PER_HOUR = 60*60
_BYTES_PER_KB = 1024
_BYTES_PER_MB = 1024*_BYTES_PER_KB

# Because we have to map circuits to guard destroy events, we need.
# The event really should arrive in the same second, but let's
# give it until the next couple in case there is a scheduled events hiccup
_MAX_CIRC_DESTROY_LAG_SECS = 2

class BwCircuitStat:
  def __init__(self, circ_id, is_hs, created_at):
    self.circ_id = circ_id
    self.is_hs = is_hs
    self.is_service = 1
    self.is_hsdir = 0
    self.is_serv_intro = 0
    self.in_use = 0
    self.built = 0
    self.purpose = None
    self.hs_state = None
    self.old_purpose = None
    self.old_hs_state = None
    self.path = []
    self.created_at = created_at
    self.last_activity = created_at
    self.read_bytes = 0
    self.sent_bytes = 0
    self.delivered_read_bytes = 0
    self.delivered_sent_bytes = 0
    self.overhead_read_bytes = 0
    self.overhead_sent_bytes = 0
    self.guard_fp = None
    self.possibly_destroyed_at = None
    self.limit_hit = False

  def total_bytes(self):
    return self.read_bytes + self.sent_bytes

  # Every read cell should have been delivered to a stream or counted as
  # protocol overhead. Whatever is left over was dropped by tor.
  def dropped_read_cells(self):
    return self.read_bytes//_CELL_PAYLOAD_SIZE - \
           (self.delivered_read_bytes+self.overhead_read_bytes)//_RELAY_PAYLOAD_SIZE

  def set_purpose(self, purpose, hs_state):
    self.purpose = purpose
    self.hs_state = hs_state
    if purpose[0:9] == "HS_CLIENT":
      self.is_service = 0
    elif purpose[0:10] == "HS_SERVICE":
      self.is_service = 1
    if purpose == "HS_CLIENT_HSDIR" or purpose == "HS_SERVICE_HSDIR":
      self.is_hsdir = 1
    elif purpose == "HS_SERVICE_INTRO":
      self.is_serv_intro = 1

  # Known tor bugs that drop cells on their own. Returns the bug number.
  def dropped_cells_tor_bug(self):
    if self.purpose == "HS_SERVICE_INTRO" and \
       self.hs_state == "HSSI_ESTABLISHED":
      return "#29699"
    if self.purpose == "CIRCUIT_PADDING" and \
       self.old_purpose == "HS_CLIENT_INTRO" and \
       self.old_hs_state == "HSCI_INTRO_SENT":
      return "#40359"
    if self.purpose == "HS_CLIENT_REND" or \
       (self.purpose == "HS_CLIENT_INTRO" and self.hs_state == "HSCI_DONE"):
      return "#29927"
    if self.purpose == "HS_SERVICE_REND" and \
       self.hs_state == "HSSR_CONNECTING":
      return "#29700"
    if self.purpose == "PATH_BIAS_TESTING":
      return "#29786"
    return None

class BwGuardStat:
  def __init__(self, guard_fp):
    self.to_guard = guard_fp
    self.killed_conns = 0
    self.killed_conn_at = 0
    self.conns_made = 0
    self.close_reasons = {} # key=reason val=count

class BandwidthStats:
  def __init__(self, controller, alert_log=None, logguard=None):
    self.controller = controller
    self.alert_log = alert_log or AlertLog()
    self.logguard = logguard
    self.circs = {} # key=circid val=BwCircStat
    self.live_guard_conns = {} # key=connid val=BwGuardStat
    self.guards = {} # key=guardfp val=BwGuardStat
    self.circs_destroyed_total = 0
    self.no_conns_since = None
    self.no_circs_since = None
    self.network_down_since = None
    self.max_fake_id = -1
    self.disconnected_circs = False
    self.disconnected_conns = False
    self._orconn_init(controller)

  # Load in our current orconns. orconn-status does not
  # tell us IDs, so we have to fake it and keep track of fakes :/
  def _orconn_init(self, controller):
    fake_id = 0
    status = controller.get_info("orconn-status").get("orconn-status", "")
    for l in status.split("\n"):
      if len(l):
        self.orconn_event(
         stem.response.ControlMessage.from_str(
           "650 ORCONN "+l+" ID="+str(fake_id)+"\r\n", "EVENT"))
        fake_id += 1
    self.max_fake_id = fake_id - 1
    if not self.live_guard_conns:
      self.no_conns_since = 0

  # We need to scan for our fake_id conns here and fixup
  # the event.id accordingly...
  def _fixup_orconn_event(self, event):
    guard_fp = event.endpoint_fingerprint
    fake_id = self.max_fake_id
    while fake_id >= 0:
      if str(fake_id) in self.live_guard_conns and \
         self.live_guard_conns[str(fake_id)].to_guard == guard_fp:
        event.id = str(fake_id)
      fake_id -= 1

  # We watch orconn events so that when one closes, we can mark
  # the circuits that might have been alive on it and watch for
  # their close messages later. We have to do this dance because
  # the CIRC event doesn't tell us which hop killed the circuit.
  def orconn_event(self, event):
    guard_fp = event.endpoint_fingerprint
    if not guard_fp in self.guards:
      self.guards[guard_fp] = BwGuardStat(guard_fp)

    if event.status == "CONNECTED":
      self.live_guard_conns[event.id] = self.guards[guard_fp]
      self.guards[guard_fp].conns_made += 1
      self.no_conns_since = None
      self.disconnected_conns = False
    elif event.status == "CLOSED" or event.status == "FAILED":
      if event.id not in self.live_guard_conns:
        self._fixup_orconn_event(event)

      if event.id in self.live_guard_conns:
        # Scan the circuit list for any circuits that might
        # be using this guard and that are in use. This is to
        # watch for their close later.
        for c in self.circs.values():
          if c.in_use and c.guard_fp == guard_fp:
            c.possibly_destroyed_at = event.arrived_at
            self.live_guard_conns[event.id].killed_conn_at = event.arrived_at
            plog("INFO", "Marking possibly destroyed circ %s at %d",
                 c.circ_id, event.arrived_at)

        del self.live_guard_conns[event.id]
        if len(self.live_guard_conns) == 0:
          self.no_conns_since = event.arrived_at
      if event.status == "CLOSED":
        reasons = self.guards[guard_fp].close_reasons
        reasons[event.reason] = reasons.get(event.reason, 0) + 1
    plog("DEBUG", event.raw_content())

  def circuit_destroyed(self, event):
    self.circs_destroyed_total += 1
    guardfp = event.path[0][0]
    if guardfp in self.guards and \
       event.arrived_at - self.guards[guardfp].killed_conn_at \
        <= _MAX_CIRC_DESTROY_LAG_SECS:
      self.guards[guardfp].killed_conn_at = 0
      self.guards[guardfp].killed_conns += 1
      plog("NOTICE", "The connection to guard "+guardfp+" was closed with "+\
           "a live circuit.")

    plog("INFO", "The connection to guard "+guardfp+" was closed with "+\
         "circuit "+event.id+" on it.")

  def any_circuits_pending(self, except_id=None):
    for c in self.circs.values():
      if not c.built and c.circ_id != except_id:
        return True
    return False

  def circ_event(self, event):
    # Failed circuits mean the network could be down:
    if event.status == stem.CircStatus.FAILED and \
       self.no_circs_since is None and self.any_circuits_pending(event.id):
      self.no_circs_since = event.arrived_at

    # Sometimes circuits get multiple FAILED+CLOSED events,
    # so we must check that first...
    if event.status == stem.CircStatus.FAILED or \
       event.status == stem.CircStatus.CLOSED:
      if event.id in self.circs:
        # If the circuit was in use, and possibly closed due to a guard
        # connection closure recently, and this event says it died due to
        # a channel closure, then record that.
        circ = self.circs[event.id]
        if circ.in_use and circ.possibly_destroyed_at:
          if event.arrived_at - circ.possibly_destroyed_at \
                <= _MAX_CIRC_DESTROY_LAG_SECS and \
             event.remote_reason == "CHANNEL_CLOSED":
            self.circuit_destroyed(event)
          else:
            plog("INFO",
                 "Circuit %s possibly destroyed, but outside of the time window (%d - %d)",
                 event.id, event.arrived_at, circ.possibly_destroyed_at)
        plog("DEBUG", "Closed hs circ for "+event.raw_content())
        del self.circs[event.id]
      return

    if event.id not in self.circs:
      if event.hs_state or (event.purpose or "")[0:2] == "HS":
        self.circs[event.id] = BwCircuitStat(event.id, 1, event.arrived_at)
        plog("DEBUG", "Added hs circ for "+event.raw_content())
      else:
        self.circs[event.id] = BwCircuitStat(event.id, 0, event.arrived_at)

    circ = self.circs[event.id]
    circ.set_purpose(event.purpose or "", event.hs_state)
    circ.path = [hop[0] for hop in event.path]

    # Consider all BUILT circs that have a specific HS purpose
    # to be "in_use".
    if event.status == stem.CircStatus.BUILT or \
       event.status == "GUARD_WAIT":
      circ.built = 1
      self.no_circs_since = None
      self.disconnected_circs = False
      if circ.purpose[0:9] == "HS_CLIENT" or \
         circ.purpose[0:10] == "HS_SERVICE":
        circ.in_use = 1
        circ.guard_fp = event.path[0][0]

    # Extending a circuit means the network is OK
    elif event.status == "EXTENDED":
      self.no_circs_since = None
      self.disconnected_circs = False

  # We need CIRC_MINOR to determine client from service as well
  # as recognize cannibalized HSDIR circs
  def circ_minor_event(self, event):
    if event.id not in self.circs:
      return

    circ = self.circs[event.id]
    circ.old_purpose = event.old_purpose
    circ.old_hs_state = event.old_hs_state
    circ.set_purpose(event.purpose or "", event.hs_state)

    # PURPOSE_CHANGED from HS_VANGUARDS -> in_use
    if event.event == stem.CircEvent.PURPOSE_CHANGED:
      if event.old_purpose == "HS_VANGUARDS":
        circ.in_use = 1
        circ.guard_fp = event.path[0][0]

    plog("DEBUG", event.raw_content())

  def stream_event(self, event):
    if event.circ_id in self.circs:
      self.circs[event.circ_id].last_activity = event.arrived_at

  def circbw_event(self, event):
    # Circuit bandwidth means circuits are working
    self.no_circs_since = None
    self.disconnected_circs = False

    if event.id in self.circs:
      plog("DEBUG", event.raw_content())
      circ = self.circs[event.id]
      circ.read_bytes += event.read
      circ.sent_bytes += event.written
      circ.delivered_read_bytes += int(event.keyword_args.get("DELIVERED_READ", 0))
      circ.delivered_sent_bytes += int(event.keyword_args.get("DELIVERED_WRITTEN", 0))
      circ.overhead_read_bytes += int(event.keyword_args.get("OVERHEAD_READ", 0))
      circ.overhead_sent_bytes += int(event.keyword_args.get("OVERHEAD_WRITTEN", 0))
      circ.last_activity = event.arrived_at

      self.check_circuit_limits(circ)

  def network_liveness_event(self, event):
    if event.status == "UP":
      self.network_down_since = None
    elif event.status == "DOWN":
      self.network_down_since = event.arrived_at

  def check_connectivity(self, now):
    if self.no_conns_since is not None:
      disconnected_secs = int(now - self.no_conns_since)

      if CONN_MAX_DISCONNECTED_SECS > 0 and \
         disconnected_secs >= CONN_MAX_DISCONNECTED_SECS:
        if not self.disconnected_conns or \
          disconnected_secs % CONN_MAX_DISCONNECTED_SECS == 0:
          self.alert(Alert(AlertKind.ConnectionDisconnected, None,
                    "We've been disconnected from the Tor network for %d seconds!"
                    % disconnected_secs, "WARN", now))
        self.disconnected_conns = True
    elif self.no_circs_since is not None:
      disconnected_secs = int(now - self.no_circs_since)

      if CIRC_MAX_DISCONNECTED_SECS > 0 and \
         disconnected_secs >= CIRC_MAX_DISCONNECTED_SECS:
        if not self.disconnected_circs or \
          disconnected_secs % CIRC_MAX_DISCONNECTED_SECS == 0:
          msg = "Tor has been failing all circuits for %d seconds!" \
                % disconnected_secs
          if self.network_down_since is not None:
            msg += " Tor reports the network down for %d seconds." \
                   % int(now - self.network_down_since)
          self.alert(Alert(AlertKind.CircuitsDisconnected, None, msg,
                           "WARN", now))
        self.disconnected_circs = True

  def check_circ_ages(self, now):
    if CIRC_MAX_AGE_HOURS <= 0:
      return

    kill_circs = [c for c in self.circs.values()
                  if not c.limit_hit and
                     now - c.created_at > CIRC_MAX_AGE_HOURS*_SECS_PER_HOUR]
    for circ in kill_circs:
      self.limit_exceeded(circ, AlertKind.AgeLimitExceeded, "NOTICE",
                          now - circ.created_at,
                          CIRC_MAX_AGE_HOURS*_SECS_PER_HOUR, now=now)

  # Used for 1x/sec heartbeat only
  def bw_event(self, event):
    self.check_connectivity(event.arrived_at)
    self.check_circ_ages(event.arrived_at)

  def check_circuit_limits(self, circ):
    if not circ.is_hs or circ.limit_hit: return

    dropped = circ.dropped_read_cells()
    if dropped > CIRC_MAX_DROPPED_CELLS:
      bug = circ.dropped_cells_tor_bug()
      if bug:
        plog("INFO", "Circ "+str(circ.circ_id)+" dropped "+str(dropped)+
             " cells, which is tor bug "+bug+". Ignoring.")
      elif circ.built:
        # When clients hang up on streams before they close, this can
        # result in dropped data from those now-invalid/unknown stream IDs.
        # Servers should not do this. Hence warn for service case, notice
        # for clients.
        if circ.is_service: loglevel = "WARN"
        else: loglevel = "NOTICE"
        self.limit_exceeded(circ, AlertKind.DroppedCells, loglevel,
                            dropped, CIRC_MAX_DROPPED_CELLS,
                            "Total read: "+str(circ.read_bytes))
        return

    if CIRC_MAX_MEGABYTES > 0 and \
       circ.total_bytes() > CIRC_MAX_MEGABYTES*_BYTES_PER_MB:
      self.limit_exceeded(circ, AlertKind.BandwidthLimitExceeded, "NOTICE",
                          circ.total_bytes(),
                          CIRC_MAX_MEGABYTES*_BYTES_PER_MB)
    elif CIRC_MAX_HSDESC_KILOBYTES > 0 and \
       circ.is_hsdir and circ.total_bytes() > \
       CIRC_MAX_HSDESC_KILOBYTES*_BYTES_PER_KB:
      self.limit_exceeded(circ, AlertKind.DescriptorOversized, "WARN",
                          circ.total_bytes(),
                          CIRC_MAX_HSDESC_KILOBYTES*_BYTES_PER_KB)
    elif CIRC_MAX_SERV_INTRO_KILOBYTES > 0 and \
       circ.is_serv_intro and circ.total_bytes() > \
       CIRC_MAX_SERV_INTRO_KILOBYTES*_BYTES_PER_KB:
      self.limit_exceeded(circ, AlertKind.ServiceIntroOversized, "WARN",
                          circ.total_bytes(),
                          CIRC_MAX_SERV_INTRO_KILOBYTES*_BYTES_PER_KB)

  def alert(self, alert):
    self.alert_log.emit(alert)

  def limit_exceeded(self, circ, kind, level, cur_val, max_val, extra="",
                     now=None):
    circ.limit_hit = True
    self.alert(Alert(kind, circ.circ_id,
                     "exceeded "+kind.value+": "+str(cur_val)+" > "+
                     str(max_val)+". "+extra, level, now))
    if CLOSE_CIRCUITS:
      if self.logguard:
        self.logguard.dump_log_queue(circ.circ_id, "Pre")
      control.try_close_circuit(self.controller, circ.circ_id)
