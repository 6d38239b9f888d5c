import random

import pytest

import hsvanguards.logger

from hsvanguards.NodeSelection import FlagsRestriction, NodeRestrictionList
from hsvanguards.NodeSelection import in_same_family, in_same_subnet
from hsvanguards.NodeSelection import select, weighted_choice
from hsvanguards.consensus import ConsensusSnapshot, RelayDescriptor
from hsvanguards.errors import InsufficientRelaysError

hsvanguards.logger.loglevel = "WARN"

GOOD_FLAGS = ("Fast", "Running", "Stable", "Valid")

def relay(i, weight=1000, flags=GOOD_FLAGS, family=(), address=None):
  if address is None:
    address = "%d.%d.0.1" % (10 + i//256, i % 256)
  return RelayDescriptor(fingerprint="%040X" % i, nickname="relay%d" % i,
                         weight=weight, bandwidth=weight,
                         flags=frozenset(flags), family=frozenset(family),
                         address=address, or_port=9001)

def snapshot(relays):
  return ConsensusSnapshot(dict((r.fingerprint, r) for r in relays), 1,
                           {"Wmm": 10000})

def fp(i):
  return "%040X" % i

def test_seeded_selection_is_deterministic():
  snap = snapshot([relay(i) for i in range(1, 40)])
  first = select(snap, 5, rng=random.Random(42))
  second = select(snap, 5, rng=random.Random(42))
  assert first == second
  assert len(set(first)) == 5

def test_excluded_fingerprints_never_chosen():
  snap = snapshot([relay(i) for i in range(1, 10)])
  excluded = [fp(i) for i in range(1, 7)]
  for seed in range(20):
    chosen = select(snap, 3, excluded, rng=random.Random(seed))
    assert sorted(chosen) == [fp(7), fp(8), fp(9)]

def test_restriction_and_zero_weight():
  snap = snapshot([relay(1, flags=("Fast", "Valid")),
                   relay(2, weight=0),
                   relay(3, flags=GOOD_FLAGS+("Authority",)),
                   relay(4)])
  for seed in range(20):
    assert select(snap, 1, rng=random.Random(seed)) == [fp(4)]

  with pytest.raises(InsufficientRelaysError) as e:
    select(snap, 2, rng=random.Random(1))
  assert e.value.wanted == 2
  assert e.value.available == 1

  # A looser restriction lets the unstable relay in
  rstr = NodeRestrictionList([FlagsRestriction(["Fast", "Valid"], [])])
  assert len(select(snap, 2, restriction=rstr, rng=random.Random(1))) == 2
  rstr.del_restriction(FlagsRestriction)
  assert rstr.restrictions == []

def test_family_is_mutual():
  a = relay(1, family=[fp(2)])
  b = relay(2, family=[fp(1)])
  c = relay(3, family=[fp(1)])
  assert in_same_family(a, b)
  assert not in_same_family(a, c)

  snap = snapshot([a, b, c])
  for seed in range(20):
    chosen = select(snap, 1, [fp(1)], [fp(1)], rng=random.Random(seed))
    assert chosen == [fp(3)]

def test_subnet_exclusion():
  a = relay(1, address="192.168.1.1")
  b = relay(2, address="192.168.200.7")
  c = relay(3, address="172.16.0.1")
  assert in_same_subnet(a, b)
  assert not in_same_subnet(a, c)

  v6a = relay(4, address="2001:db8:1::1")
  v6b = relay(5, address="2001:db8:ffff::2")
  assert in_same_subnet(v6a, v6b)

  snap = snapshot([a, b, c])
  for seed in range(20):
    assert select(snap, 1, [fp(1)], [fp(1)],
                  rng=random.Random(seed)) == [fp(3)]

  seen = set()
  for seed in range(40):
    seen.update(select(snap, 1, [fp(1)], [fp(1)], rng=random.Random(seed),
                       exclude_subnets=False))
  assert seen == set([fp(2), fp(3)])

def test_chosen_relays_avoid_each_other():
  a = relay(1, family=[fp(2)])
  b = relay(2, family=[fp(1)])
  c = relay(3)
  snap = snapshot([a, b, c])
  for seed in range(20):
    chosen = select(snap, 2, rng=random.Random(seed))
    assert set(chosen) != set([fp(1), fp(2)])
    assert fp(3) in chosen

  with pytest.raises(InsufficientRelaysError):
    select(snap, 3, rng=random.Random(1))
  assert len(select(snap, 3, rng=random.Random(1),
                    distinct_families=False)) == 3

def test_weighted_choice_follows_weight():
  pool = [relay(1, weight=1), relay(2, weight=1000)]
  rng = random.Random(7)
  heavy = 0
  for i in range(1000):
    if weighted_choice(pool, rng).fingerprint == fp(2):
      heavy += 1
  assert heavy > 950
