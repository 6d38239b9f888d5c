""" The relay directory, as tor currently sees it. """
import calendar
import collections
import os
import types

import stem
import stem.descriptor
import stem.descriptor.microdescriptor
import stem.descriptor.router_status_entry

from .errors import ConsensusParseError
from .logger import plog

# Number of md/id/ keys per GETINFO when fetching families
FAMILY_BATCH_SIZE = 100

_WEIGHT_SCALE = 10000.0

RelayDescriptor = collections.namedtuple("RelayDescriptor",
                    ["fingerprint", "nickname", "weight", "bandwidth",
                     "flags", "family", "address", "or_port"])

class ConsensusSnapshot:
  """ An immutable view of one consensus.

      relays maps upper-case fingerprints to RelayDescriptors. epoch is the
      consensus valid-after time, or a refresh counter if we could not
      read it.
  """
  def __init__(self, relays=None, epoch=0, bw_weights=None):
    self.relays = types.MappingProxyType(dict(relays or {}))
    self.epoch = epoch
    self.bw_weights = types.MappingProxyType(dict(bw_weights or {}))

  def __len__(self):
    return len(self.relays)

  def __contains__(self, fingerprint):
    return fingerprint in self.relays

  def get(self, fingerprint):
    return self.relays.get(fingerprint)

def position_weight(flags, bw_weights, position="m"):
  if "Guard" in flags and "Exit" in flags:
    key = "W"+position+"d"
  elif "Exit" in flags:
    key = "W"+position+"e"
  elif "Guard" in flags:
    key = "W"+position+"g"
  else:
    key = "W"+position+"m"
  return bw_weights.get(key, _WEIGHT_SCALE)/_WEIGHT_SCALE

def relay_bandwidth(entry):
  if entry.measured is not None:
    return entry.measured
  if entry.bandwidth is not None:
    return entry.bandwidth
  return 0

def get_consensus_weights(consensus_filename):
  """ Returns (bandwidth_weights, valid_after) from a consensus file. """
  parsed_consensus = next(stem.descriptor.parse_file(consensus_filename,
           descriptor_type="network-status-microdesc-consensus-3 1.0",
           document_handler=stem.descriptor.DocumentHandler.BARE_DOCUMENT))

  assert(parsed_consensus.is_consensus)
  return (parsed_consensus.bandwidth_weights, parsed_consensus.valid_after)

def split_router_entries(ns_content):
  entries = []
  current = []
  for line in ns_content.splitlines():
    if not line.strip():
      continue
    if line.startswith("r ") and current:
      entries.append("\n".join(current)+"\n")
      current = []
    current.append(line)
  if current:
    entries.append("\n".join(current)+"\n")
  return entries

def parse_families(md_content):
  """ Fingerprints declared in a microdescriptor's family line. """
  md = stem.descriptor.microdescriptor.Microdescriptor(
          md_content.encode("utf-8"))
  family = set()
  for member in md.family:
    if member.startswith("$") and len(member) >= 41:
      family.add(member[1:41].upper())
  return frozenset(family)

class ConsensusView:
  def __init__(self, channel, fetch_families=True, restriction=None):
    self.channel = channel
    self.fetch_families = fetch_families
    self.restriction = restriction
    self.refresh_count = 0
    self._snapshot = ConsensusSnapshot()

  def snapshot(self):
    return self._snapshot

  def refresh(self):
    """ Rebuild the snapshot from tor.

        Raises ConsensusParseError and leaves the current snapshot in place
        if anything tor hands us can't be used.
    """
    try:
      ns_all = self.channel.get_info("ns/all")["ns/all"]
    except (stem.ControllerError, KeyError) as e:
      raise ConsensusParseError("Cannot fetch ns/all: "+str(e))

    entries = []
    for content in split_router_entries(ns_all):
      try:
        entries.append(stem.descriptor.router_status_entry.RouterStatusEntryV3(
                         content.encode("utf-8"), validate=True))
      except ValueError as e:
        raise ConsensusParseError("Malformed router status entry: "+str(e))
    if not entries:
      raise ConsensusParseError("Tor gave us an empty consensus")

    data_dir = self.channel.get_conf("DataDirectory")
    if data_dir is None:
      raise ConsensusParseError("You must set a DataDirectory location "+
                                "option in your torrc.")
    consensus_file = os.path.join(data_dir, "cached-microdesc-consensus")
    try:
      (weights, valid_after) = get_consensus_weights(consensus_file)
    except (IOError, ValueError, StopIteration, AssertionError) as e:
      raise ConsensusParseError("Cannot read "+consensus_file+": "+str(e))
    if not weights:
      raise ConsensusParseError(consensus_file+" has no bandwidth-weights")

    families = {}
    if self.fetch_families:
      families = self._fetch_families(entries)

    self.refresh_count += 1
    if valid_after is not None:
      epoch = calendar.timegm(valid_after.utctimetuple())
    else:
      epoch = self.refresh_count

    self._snapshot = ConsensusView.from_entries(entries, weights, families,
                                                epoch)
    plog("INFO", "New consensus with "+str(len(self._snapshot))+" relays")
    return self._snapshot

  def _fetch_families(self, entries):
    fps = []
    for e in entries:
      if self.restriction is None or self.restriction.r_is_ok(e):
        fps.append(e.fingerprint)

    families = {}
    for i in range(0, len(fps), FAMILY_BATCH_SIZE):
      batch = fps[i:i+FAMILY_BATCH_SIZE]
      try:
        mds = self.channel.get_info(*map(lambda fp: "md/id/"+fp, batch))
      except stem.ControllerError as e:
        plog("INFO", "Could not fetch microdescriptors for families: "+str(e))
        continue
      for key, content in mds.items():
        try:
          families[key[len("md/id/"):].upper()] = parse_families(content)
        except ValueError as e:
          plog("INFO", "Bad microdescriptor for "+key+": "+str(e))
    return families

  @staticmethod
  def from_entries(entries, weights, families=None, epoch=0):
    families = families or {}
    relays = {}
    for e in entries:
      bw = relay_bandwidth(e)
      relays[e.fingerprint] = RelayDescriptor(
           fingerprint=e.fingerprint,
           nickname=e.nickname,
           weight=bw*position_weight(e.flags, weights),
           bandwidth=bw,
           flags=frozenset(e.flags),
           family=families.get(e.fingerprint, frozenset()),
           address=e.address,
           or_port=e.or_port)
    return ConsensusSnapshot(relays, epoch, weights)
