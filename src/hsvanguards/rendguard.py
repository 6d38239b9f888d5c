""" Detection of rendezvous point overuse.

    An adversary who can get a service to build rendezvous circuits to a
    relay of their choice gets to see the service's layer3 guards. We
    count how often each relay is used as a rendezvous point, and flag
    relays that are used much more than their consensus weight says they
    should be.
"""
from . import bandguards
from . import control

from .NodeSelection import FlagsRestriction, NodeRestrictionList
from .alerts import Alert, AlertKind, AlertLog
from .consensus import position_weight
from .logger import plog

############ Rendguard options #################

# Minimum number of hops we have to see before applying use stat checks
USE_GLOBAL_START_COUNT = 1000

# Number of hops to scale counts down by half at
USE_SCALE_AT_COUNT = 20000

# Minimum number of times a relay has to be used before we check it for
# overuse
USE_RELAY_START_COUNT = 100

# How many times more than its bandwidth must a relay be used?
USE_MAX_USE_TO_BW_RATIO = 5.0

# What is percent of the network weight is not in the consensus right now?
# Put another way, the max number of rend requests not in the consensus is
# consensus_churn*USE_MAX_USE_TO_BW_RATIO.
USE_MAX_CONSENSUS_WEIGHT_CHURN = 1.0

# Close circuits where the rendezvous point appears to be overused
CLOSE_CIRCUITS_ON_OVERUSE = True

_NOT_IN_CONSENSUS_ID = "NOT_IN_CONSENSUS"

REND_RESTRICTION = NodeRestrictionList([FlagsRestriction(["Fast", "Valid"],
                                                         ["Authority"])])

class RendUseCount:
  def __init__(self, idhex, weight):
    self.idhex = idhex
    self.used = 0
    self.weight = weight

def rend_weights(snapshot):
  """ Expected share of rendezvous use for each eligible relay.

      Middles are weighted as middles. Exits can also end up as rend points
      through cannibalized circuits, so they are weighted as exits and
      normalized against the exit total instead.
  """
  node_weights = {}
  exit_weights = {}
  for r in snapshot.relays.values():
    if not REND_RESTRICTION.r_is_ok(r):
      continue
    if "Exit" in r.flags:
      exit_weights[r.fingerprint] = \
          r.bandwidth*position_weight(r.flags, snapshot.bw_weights, "e")
      node_weights[r.fingerprint] = \
          r.bandwidth*position_weight(r.flags, snapshot.bw_weights, "m")
    else:
      node_weights[r.fingerprint] = r.weight

  weight_total = sum(node_weights.values())
  exit_total = sum(exit_weights.values())
  ret = {}
  for fp in node_weights:
    if fp in exit_weights and exit_total > 0:
      ret[fp] = exit_weights[fp]/exit_total
    elif weight_total > 0:
      ret[fp] = node_weights[fp]/weight_total
    else:
      ret[fp] = 0.0
  return ret

class RendGuard:
  def __init__(self, controller=None, alert_log=None, logguard=None):
    self.controller = controller
    self.alert_log = alert_log or AlertLog()
    self.logguard = logguard
    self.use_counts = {}
    self.total_use_counts = 0.0
    self.closed_circs = set()
    self.counted_circs = set()
    self.use_counts[_NOT_IN_CONSENSUS_ID] = \
         RendUseCount(_NOT_IN_CONSENSUS_ID,
                      USE_MAX_CONSENSUS_WEIGHT_CHURN/100.0)

  def scale_counts(self):
    # Periodically we divide counts by two, to avoid overcounting
    # high-uptime relays vs old ones
    for r in self.use_counts.values():
      r.used /= 2.0
    self.total_use_counts = float(sum(r.used for r in
                                      self.use_counts.values()))

  def valid_rend_use(self, r):
    if r not in self.use_counts:
      plog("INFO", "Relay "+r+" is not in our consensus, but someone is "+
           "using it!")
      r = _NOT_IN_CONSENSUS_ID

    self.use_counts[r].used += 1
    self.total_use_counts += 1.0

    if self.total_use_counts >= USE_SCALE_AT_COUNT:
      plog("INFO", "Total use counts "+str(self.total_use_counts)+
           " reached the scale count. Halving all counts.")
      self.scale_counts()

    # TODO: Can we base this check on statistical confidence intervals?
    if self.total_use_counts >= USE_GLOBAL_START_COUNT and \
       self.use_counts[r].used >= USE_RELAY_START_COUNT:
      plog("DEBUG", "Relay "+r+" used "+str(self.use_counts[r].used)+
                  " times out of "+str(int(self.total_use_counts)))

      if self.use_counts[r].used/self.total_use_counts > \
         self.use_counts[r].weight*USE_MAX_USE_TO_BW_RATIO:
        return (r, False)
    return (r, True)

  def xfer_use_counts(self, snapshot):
    old_counts = self.use_counts
    self.use_counts = {}
    for fp, weight in rend_weights(snapshot).items():
      self.use_counts[fp] = RendUseCount(fp, weight)
    self.use_counts[_NOT_IN_CONSENSUS_ID] = \
         RendUseCount(_NOT_IN_CONSENSUS_ID,
                      USE_MAX_CONSENSUS_WEIGHT_CHURN/100.0)

    for r in old_counts:
      if r in self.use_counts:
        self.use_counts[r].used = old_counts[r].used

    self.total_use_counts = float(sum(r.used for r in
                                      self.use_counts.values()))
    if self.total_use_counts >= USE_SCALE_AT_COUNT:
      self.scale_counts()

  def circ_event(self, event):
    if event.status == "BUILT" and event.purpose == "HS_SERVICE_REND":
      # tor can report BUILT more than once for the same circuit
      if event.id in self.counted_circs:
        return
      self.counted_circs.add(event.id)
      rp = event.path[-1][0]
      (counted_as, ok) = self.valid_rend_use(rp)
      if not ok:
        self.overuse_detected(event.id, counted_as)
    elif event.status == "CLOSED" or event.status == "FAILED":
      self.closed_circs.discard(event.id)
      self.counted_circs.discard(event.id)

  def overuse_detected(self, circ_id, r):
    count = self.use_counts[r]
    self.alert_log.emit(Alert(AlertKind.RendezvousOveruse, circ_id,
                    "Relay "+r+" used "+str(count.used)+" times out of "+
                    str(int(self.total_use_counts))+
                    ". This is above its weight of "+str(count.weight),
                    "WARN"))

    if CLOSE_CIRCUITS_ON_OVERUSE and bandguards.CLOSE_CIRCUITS and \
       self.controller is not None and \
       circ_id not in self.closed_circs:
      self.closed_circs.add(circ_id)
      if self.logguard:
        self.logguard.dump_log_queue(circ_id, "Pre")
      control.try_close_circuit(self.controller, circ_id)
