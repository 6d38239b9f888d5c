""" Layer2 and layer3 guard selection, rotation and tor configuration. """
import collections
import ipaddress
import random
import sys
import time

import stem

from .NodeSelection import select
from .errors import InsufficientRelaysError
from .logger import plog

################### Vanguard options ##################
#
NUM_LAYER1_GUARDS = 2 # 0 is Tor default

# Minimum and maximum number of guards per layer. Layers are topped up to
# the minimum; a state file holding more than the maximum is trimmed.
NUM_LAYER2_GUARDS = 4
MAX_LAYER2_GUARDS = 8
NUM_LAYER3_GUARDS = 8
MAX_LAYER3_GUARDS = 16

# In days:
LAYER1_LIFETIME_DAYS = 0 # Use tor default

# In hours
MIN_LAYER2_LIFETIME_HOURS = 24*1
MAX_LAYER2_LIFETIME_HOURS = 24*45

# In hours
MIN_LAYER3_LIFETIME_HOURS = 1
MAX_LAYER3_LIFETIME_HOURS = 48

# Avoid picking guards in the same family or /16 as the rest of their layer
EXCLUDE_FAMILIES = True

# Whether a relay may be a layer2 and a layer3 guard at the same time
ALLOW_CROSS_LAYER_REUSE = True

# How often to check for expired guards, in seconds
ROTATION_CHECK_SECS = 60

_SEC_PER_HOUR = (60*60)

# Number of ip-to-country lookups per GETINFO
_COUNTRY_BATCH_SIZE = 100

class GuardNode:
  def __init__(self, idhex, chosen_at, expires_at):
    self.idhex = idhex
    self.chosen_at = chosen_at
    self.expires_at = expires_at

  def __eq__(self, other):
    return isinstance(other, GuardNode) and \
           (self.idhex, self.chosen_at, self.expires_at) == \
           (other.idhex, other.chosen_at, other.expires_at)

  def __hash__(self):
    return hash((self.idhex, self.chosen_at, self.expires_at))

  def __repr__(self):
    return "GuardNode(%s, %.0f, %.0f)" % (self.idhex, self.chosen_at,
                                          self.expires_at)

VanguardStateSnapshot = collections.namedtuple("VanguardStateSnapshot",
                          ["version", "layer2", "layer3"])

class GuardLayer:
  def __init__(self, layer, min_size, max_size, min_lifetime_hours,
               max_lifetime_hours):
    self.layer = layer
    self.guards = []
    self.min_size = min_size
    self.max_size = max_size
    self.min_lifetime_hours = min_lifetime_hours
    self.max_lifetime_hours = max_lifetime_hours

  def fingerprints(self):
    return [g.idhex for g in self.guards]

  def guardset(self):
    return ",".join(self.fingerprints())

  def new_lifetime(self, rng):
    return rng.uniform(self.min_lifetime_hours*_SEC_PER_HOUR,
                       self.max_lifetime_hours*_SEC_PER_HOUR)

  def add(self, idhex, now, rng):
    guard = GuardNode(idhex, now, now + self.new_lifetime(rng))
    self.guards.append(guard)
    plog("INFO", "New layer"+str(self.layer)+" guard: "+idhex)
    return guard

  def trim(self):
    if len(self.guards) <= self.max_size:
      return False
    for g in self.guards[self.max_size:]:
      plog("INFO", "Removing extra layer"+str(self.layer)+" guard "+g.idhex)
    self.guards = self.guards[:self.max_size]
    return True

  def _remove_if(self, pred, why):
    removed = []
    for g in list(self.guards):
      if pred(g):
        self.guards.remove(g)
        removed.append(g)
        plog("INFO", "Removing "+why+" layer"+str(self.layer)+" guard "+
             g.idhex)
    return removed

  def remove_expired(self, now):
    return self._remove_if(lambda g: g.expires_at <= now, "expired")

  def remove_down(self, snapshot):
    return self._remove_if(lambda g: g.idhex not in snapshot, "down")

  def remove_excluded(self, excluded):
    return self._remove_if(lambda g: g.idhex in excluded, "excluded")

class ExcludeNodes:
  """ tor's ExcludeNodes and GeoIPExcludeUnknown, applied to our layers.

      Entries can be fingerprints (optionally with a $ prefix and a ~nick
      or =nick suffix), {cc} country codes, addresses or networks, and
      nicknames.
  """
  def __init__(self, conf_line="", exclude_unknowns=None):
    self.networks = []
    self.idhexes = set()
    self.nicks = set()
    self.countries = set()
    self.exclude_unknowns = exclude_unknowns

    if exclude_unknowns == "1":
      self.countries.add("??")
      self.countries.add("a1")

    self._parse_line(conf_line or "")

    if exclude_unknowns == "auto" and self.countries:
      self.countries.add("??")
      self.countries.add("a1")

  def _parse_line(self, conf_line):
    for part in conf_line.split(","):
      p = part.strip()
      if not p:
        continue
      if p[0] == "$":
        p = p[1:]
      if "~" in p:
        p = p[:p.index("~")]
      if "=" in p:
        p = p[:p.index("=")]

      if len(p) == 40 and all(c in "0123456789abcdefABCDEF" for c in p):
        self.idhexes.add(p.upper())
      elif p[0] == "{" and p[-1] == "}":
        if len(p) == 4:
          self.countries.add(p[1:-1].lower())
        else:
          plog("NOTICE", "Ignoring bad country code in ExcludeNodes: "+p)
      elif ":" in p or "." in p:
        try:
          self.networks.append(ipaddress.ip_network(p.strip("[]"),
                                                    strict=False))
        except ValueError:
          plog("NOTICE", "Ignoring unparseable ExcludeNodes entry: "+p)
      else:
        self.nicks.add(p)

  @staticmethod
  def from_tor(channel):
    return ExcludeNodes(channel.get_conf("ExcludeNodes", ""),
                        channel.get_conf("GeoIPExcludeUnknown", None))

  def has_exclusions(self):
    return bool(self.networks or self.idhexes or self.nicks or self.countries)

  def router_is_excluded(self, r, country=None):
    if r.fingerprint in self.idhexes:
      return True
    if r.nickname in self.nicks:
      return True
    if country is not None and country in self.countries:
      return True
    try:
      addr = ipaddress.ip_address(r.address)
    except ValueError:
      return False
    for network in self.networks:
      if addr.version == network.version and addr in network:
        return True
    return False

  def lookup_countries(self, channel, addresses):
    countries = {}
    addresses = sorted(set(addresses))
    for i in range(0, len(addresses), _COUNTRY_BATCH_SIZE):
      keys = ["ip-to-country/"+a for a in addresses[i:i+_COUNTRY_BATCH_SIZE]]
      try:
        for key, cc in channel.get_info(*keys).items():
          countries[key[len("ip-to-country/"):]] = cc.strip().lower()
      except stem.ControllerError as e:
        plog("NOTICE", "Can't look up relay countries (is GeoIP loaded?): "+
             str(e))
        break
    return countries

  def excluded_fingerprints(self, snapshot, channel=None):
    if not self.has_exclusions():
      return set()

    countries = {}
    if self.countries and channel is not None:
      countries = self.lookup_countries(channel,
                       [r.address for r in snapshot.relays.values()])

    excluded = set()
    for r in snapshot.relays.values():
      if self.router_is_excluded(r, countries.get(r.address)):
        excluded.add(r.fingerprint)
    return excluded

class VanguardState:
  """ The single owner of the layer2 and layer3 guard lists.

      Every change is written through the PersistenceStore immediately.
  """
  def __init__(self, store, rng=None):
    self.store = store
    self.rng = rng or random.Random()
    self.layer2 = GuardLayer(2, NUM_LAYER2_GUARDS, MAX_LAYER2_GUARDS,
                             MIN_LAYER2_LIFETIME_HOURS,
                             MAX_LAYER2_LIFETIME_HOURS)
    self.layer3 = GuardLayer(3, NUM_LAYER3_GUARDS, MAX_LAYER3_GUARDS,
                             MIN_LAYER3_LIFETIME_HOURS,
                             MAX_LAYER3_LIFETIME_HOURS)
    self.excluder = ExcludeNodes()
    self.pickle_revision = 1

  @staticmethod
  def load_or_create(store, rng=None):
    state = VanguardState(store, rng)
    snapshot = store.load() # StateFormatError is fatal to the caller
    if snapshot is None:
      plog("NOTICE", "Creating new vanguard state file at: "+store.path)
      return state
    state.layer2.guards = list(snapshot.layer2)
    state.layer3.guards = list(snapshot.layer3)
    state.pickle_revision = snapshot.version
    plog("INFO", "Current layer2 guards: "+state.layer2_guardset())
    plog("INFO", "Current layer3 guards: "+state.layer3_guardset())
    return state

  def layers(self):
    if self.layer3.min_size or self.layer3.guards:
      return (self.layer2, self.layer3)
    return (self.layer2,)

  def snapshot(self):
    return VanguardStateSnapshot(self.pickle_revision,
                                 tuple(self.layer2.guards),
                                 tuple(self.layer3.guards))

  def persist(self):
    self.store.save(self.snapshot())

  def layer2_guardset(self):
    return self.layer2.guardset()

  def layer3_guardset(self):
    return self.layer3.guardset()

  def update_exclusions(self, channel):
    self.excluder = ExcludeNodes.from_tor(channel)

  def _other_layer(self, layer):
    if layer is self.layer2:
      return self.layer3
    return self.layer2

  def _select_one(self, layer, snapshot, excluded):
    exclude = set(layer.fingerprints()) | excluded
    if not ALLOW_CROSS_LAYER_REUSE:
      exclude |= set(self._other_layer(layer).fingerprints())

    if EXCLUDE_FAMILIES:
      try:
        return select(snapshot, 1, exclude, layer.fingerprints(),
                      rng=self.rng)[0]
      except InsufficientRelaysError:
        plog("NOTICE", "Not enough relays outside the families of our "+
             "layer"+str(layer.layer)+" guards. Ignoring families.")
    try:
      return select(snapshot, 1, exclude, (), rng=self.rng,
                    exclude_subnets=False)[0]
    except InsufficientRelaysError as e:
      plog("WARN", "Can't fill layer"+str(layer.layer)+" ("+
           str(len(layer.guards))+"/"+str(layer.min_size)+"): "+str(e))
      return None

  def rotate(self, snapshot, now=None, channel=None):
    """ One rotation tick. Returns True if either layer changed.

        channel is only needed for country-based ExcludeNodes lookups.
    """
    if now is None:
      now = time.time()
    changed = False
    have_consensus = len(snapshot) > 0

    excluded = set()
    if have_consensus:
      excluded = self.excluder.excluded_fingerprints(snapshot, channel)

    for layer in self.layers():
      removed = layer.trim()
      expired = layer.remove_expired(now)
      removed = removed or bool(expired)
      if have_consensus:
        removed = layer.remove_down(snapshot) or removed
        removed = layer.remove_excluded(excluded) or removed
      if removed:
        self.persist()
        changed = True

      if not have_consensus:
        continue

      # Expired slots are replaced 1-for-1, even above the minimum
      wanted = min(max(len(layer.guards) + len(expired), layer.min_size),
                   layer.max_size)
      while len(layer.guards) < wanted:
        fp = self._select_one(layer, snapshot, excluded)
        if fp is None:
          break
        layer.add(fp, now, self.rng)
        self.persist()
        changed = True

    return changed

  def configure_tor(self, channel, save_conf=False):
    if NUM_LAYER1_GUARDS:
      channel.set_conf("NumEntryGuards", str(NUM_LAYER1_GUARDS))
      channel.set_conf("NumDirectoryGuards", str(NUM_LAYER1_GUARDS))

    if LAYER1_LIFETIME_DAYS > 0:
      channel.set_conf("GuardLifetime", str(LAYER1_LIFETIME_DAYS)+" days")

    try:
      channel.set_conf("HSLayer2Nodes", self.layer2_guardset())

      if self.layer3.min_size:
        channel.set_conf("HSLayer3Nodes", self.layer3_guardset())
    except stem.InvalidArguments:
      plog("ERROR",
           "Vanguards requires Tor 0.3.3.x (and ideally 0.3.4.x or newer).")
      sys.exit(1)

    if save_conf:
      # This is not a fatal error. Things like onionperf use stdin for conf
      # files. Maybe other stuff too. But let the user know.
      try:
        channel.save_conf()
      except stem.OperationFailed as e:
        plog("NOTICE", "Tor can't save its own config file: "+str(e))
