""" Relay restrictions and bandwidth-weighted selection. """
import ipaddress
import random

from .errors import InsufficientRelaysError
from .logger import plog

class NodeRestriction:
  "Interface for node restriction policies"
  def r_is_ok(self, r):
    "Returns true if Router 'r' is acceptable for this restriction"
    return True

class FlagsRestriction(NodeRestriction):
  "Restriction for mandatory and forbidden router flags"
  def __init__(self, mandatory, forbidden=()):
    """Constructor. 'mandatory' and 'forbidden' are both lists of router
     flags as strings."""
    self.mandatory = list(mandatory)
    self.forbidden = list(forbidden)

  def r_is_ok(self, router):
    for m in self.mandatory:
      if not m in router.flags: return False
    for f in self.forbidden:
      if f in router.flags: return False
    return True

  def __str__(self):
    return self.__class__.__name__+"("+str(self.mandatory)+","+str(self.forbidden)+")"

class NodeRestrictionList(NodeRestriction):
  "Class to manage a list of NodeRestrictions"
  def __init__(self, restrictions):
    "Constructor. 'restrictions' is a list of NodeRestriction instances"
    self.restrictions = list(restrictions)

  def r_is_ok(self, r):
    "Returns true of Router 'r' passes all of the contained restrictions"
    for rs in self.restrictions:
      if not rs.r_is_ok(r): return False
    return True

  def del_restriction(self, RestrictionClass):
    "Remove all restrictions of type RestrictionClass from the list."
    self.restrictions = [r for r in self.restrictions
                         if not isinstance(r, RestrictionClass)]

  def __str__(self):
    return self.__class__.__name__+"("+str(list(map(str, self.restrictions)))+")"

VANGUARD_RESTRICTION = NodeRestrictionList(
                          [FlagsRestriction(["Fast", "Stable", "Valid"],
                                            ["Authority"])])

# Family in tor's sense: both relays must list each other.
def in_same_family(r1, r2):
  return r1.fingerprint in r2.family and r2.fingerprint in r1.family

def _subnet(address):
  try:
    addr = ipaddress.ip_address(address)
  except ValueError:
    return None
  if addr.version == 4:
    return ipaddress.ip_network(address+"/16", strict=False)
  return ipaddress.ip_network(address+"/32", strict=False)

def in_same_subnet(r1, r2):
  n1 = _subnet(r1.address)
  return n1 is not None and n1 == _subnet(r2.address)

def _related(r1, r2, subnets, families):
  if families and in_same_family(r1, r2):
    return True
  return subnets and in_same_subnet(r1, r2)

def _candidates(snapshot, exclude_fingerprints, exclude_families,
                restriction, exclude_subnets):
  excluded = set(exclude_fingerprints)
  neighbors = []
  for fp in exclude_families:
    r = snapshot.get(fp)
    if r is not None:
      neighbors.append(r)

  pool = []
  for fp in sorted(snapshot.relays):
    r = snapshot.relays[fp]
    if fp in excluded or r.weight <= 0:
      continue
    if restriction is not None and not restriction.r_is_ok(r):
      continue
    if any(_related(r, n, exclude_subnets, True) for n in neighbors):
      continue
    pool.append(r)
  return pool

def weighted_choice(pool, rng):
  """ Pick one relay from the fingerprint-ordered pool, weighted by weight. """
  weight_total = sum(r.weight for r in pool)
  choice_val = rng.uniform(0, weight_total)
  choose_total = 0
  for r in pool:
    choose_total += r.weight
    if choose_total > choice_val:
      return r
  return pool[-1]

def select(snapshot, count, exclude_fingerprints=(), exclude_families=(),
           restriction=None, rng=None, exclude_subnets=True,
           distinct_families=True):
  """ Choose count distinct relays from snapshot by consensus weight.

      exclude_families is a list of fingerprints whose families (and, with
      exclude_subnets, whose /16 neighbors) must not be chosen. With
      distinct_families, the chosen relays also avoid each other's
      families and subnets. Raises InsufficientRelaysError if the pool runs
      dry before count relays are chosen.
  """
  if rng is None:
    rng = random
  if restriction is None:
    restriction = VANGUARD_RESTRICTION

  pool = _candidates(snapshot, exclude_fingerprints, exclude_families,
                     restriction, exclude_subnets)
  chosen = []
  while len(chosen) < count:
    if not pool:
      plog("INFO", "No relays left after restrictions applied: "+
           str(restriction))
      raise InsufficientRelaysError(count, len(chosen))
    r = weighted_choice(pool, rng)
    chosen.append(r.fingerprint)
    pool = [p for p in pool if p.fingerprint != r.fingerprint and
            not (distinct_families and
                 _related(p, r, exclude_subnets, True))]
  return chosen
