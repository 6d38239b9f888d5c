""" The event loop that drives guard rotation and the detectors. """
import threading
import time

import stem
import stem.version

from . import config
from . import vanguards

from .NodeSelection import VANGUARD_RESTRICTION
from .alerts import AlertLog
from .bandguards import BandwidthStats
from .consensus import ConsensusView
from .errors import ConsensusParseError
from .logguard import LogGuard, log_event_types
from .logger import plog
from .rendguard import RendGuard

_MIN_TOR_VERSION_FOR_BW = stem.version.Version("0.3.4.4-rc")

# Longest we wait on the event queue before looking at the stop flag
_STOP_POLL_SECS = 1

class Controller:
  """ Owns one control connection and everything that listens to it.

      All guard state and detector state is mutated only from run(), on
      the thread that calls it.
  """
  def __init__(self, channel, state, stop_event=None):
    self.channel = channel
    self.state = state
    self.alert_log = AlertLog()
    self.consensus = ConsensusView(channel,
                                   fetch_families=vanguards.EXCLUDE_FAMILIES,
                                   restriction=VANGUARD_RESTRICTION)
    self.logguard = None
    self.bandwidths = None
    self.rendguard = None
    self.next_rotation = 0
    self._stop = stop_event or threading.Event()

  def stop(self):
    self._stop.set()

  def stopping(self):
    return self._stop.is_set()

  def new_consensus_event(self, event=None, save_conf=False):
    try:
      self.consensus.refresh()
    except ConsensusParseError as e:
      plog("WARN", "Keeping the previous consensus: "+str(e))
    snapshot = self.consensus.snapshot()

    if config.ENABLE_VANGUARDS:
      self.state.update_exclusions(self.channel)
      self.state.rotate(snapshot, channel=self.channel)
      self.state.configure_tor(self.channel, save_conf)

    if self.rendguard:
      self.rendguard.xfer_use_counts(snapshot)

  def rotation_tick(self, now=None):
    if not config.ENABLE_VANGUARDS:
      return
    if self.state.rotate(self.consensus.snapshot(), now, self.channel):
      plog("INFO", "Rotated guards. layer2: "+self.state.layer2_guardset()+
           " layer3: "+self.state.layer3_guardset())
      self.state.configure_tor(self.channel)

  def signal_event(self, event):
    # Tor forgets our SETCONFs when it re-reads its torrc
    if event.signal == stem.Signal.RELOAD and config.ENABLE_VANGUARDS:
      plog("NOTICE", "Tor got SIGHUP. Reapplying vanguards.")
      self.state.configure_tor(self.channel)

  def run_once(self):
    """ Choose guards, write them to tor and the torrc, and return. """
    self.new_consensus_event(save_conf=True)

  def setup(self):
    if config.ENABLE_LOGGUARD:
      self.logguard = LogGuard(self.channel)
    if config.ENABLE_RENDGUARD:
      self.rendguard = RendGuard(self.channel, self.alert_log, self.logguard)
    if config.ENABLE_BANDGUARDS:
      self.bandwidths = BandwidthStats(self.channel, self.alert_log,
                                       self.logguard)

    self.new_consensus_event()

    events = ["NEWCONSENSUS", "SIGNAL"]
    if self.rendguard:
      events.append("CIRC")
    if self.bandwidths:
      events += ["CIRC", "STREAM", "ORCONN", "BW", "NETWORK_LIVENESS"]
      if self.channel.get_version() >= _MIN_TOR_VERSION_FOR_BW:
        events += ["CIRC_BW", "CIRC_MINOR"]
      else:
        plog("NOTICE", "In order for bandwidth-based protections to be "+
                        "enabled, you must use Tor 0.3.4.0-alpha or newer.")
    if self.logguard:
      events += ["CIRC"] + log_event_types()

    self.channel.subscribe(events)

  def dispatch(self, event):
    etype = event.type
    if etype == "CIRC":
      if self.rendguard:
        self.rendguard.circ_event(event)
      if self.bandwidths:
        self.bandwidths.circ_event(event)
      if self.logguard:
        self.logguard.circ_event(event)
    elif etype == "CIRC_BW":
      if self.bandwidths:
        self.bandwidths.circbw_event(event)
    elif etype == "CIRC_MINOR":
      if self.bandwidths:
        self.bandwidths.circ_minor_event(event)
    elif etype == "STREAM":
      if self.bandwidths:
        self.bandwidths.stream_event(event)
    elif etype == "ORCONN":
      if self.bandwidths:
        self.bandwidths.orconn_event(event)
    elif etype == "BW":
      if self.bandwidths:
        self.bandwidths.bw_event(event)
    elif etype == "NETWORK_LIVENESS":
      if self.bandwidths:
        self.bandwidths.network_liveness_event(event)
    elif etype == "NEWCONSENSUS":
      self.new_consensus_event(event)
    elif etype == "SIGNAL":
      self.signal_event(event)
    elif etype in ("DEBUG", "INFO", "NOTICE", "WARN", "ERR"):
      if self.logguard:
        self.logguard.log_all_event(event)
        if etype == "WARN":
          self.logguard.log_warn_event(event)
    else:
      plog("DEBUG", "Unhandled event: "+event.raw_content())

  def run(self):
    """ Dispatch events until stop() is called.

        Raises ChannelError if the control connection dies.
    """
    self.next_rotation = time.time() + vanguards.ROTATION_CHECK_SECS
    while not self._stop.is_set():
      timeout = min(max(0, self.next_rotation - time.time()), _STOP_POLL_SECS)
      event = self.channel.next_event(timeout)
      if event is not None:
        self.dispatch(event)

      if time.time() >= self.next_rotation:
        self.rotation_tick()
        self.next_rotation = time.time() + vanguards.ROTATION_CHECK_SECS
