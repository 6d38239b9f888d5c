import random

import pytest
import stem

import hsvanguards.logger
import hsvanguards.vanguards

from hsvanguards.consensus import ConsensusSnapshot, RelayDescriptor
from hsvanguards.persistence import PersistenceStore
from hsvanguards.vanguards import ExcludeNodes, GuardNode, VanguardState
from hsvanguards.vanguards import _SEC_PER_HOUR

hsvanguards.logger.loglevel = "WARN"

GOOD_FLAGS = ("Fast", "Running", "Stable", "Valid")

def relay(i, weight=1000, address=None, nickname=None):
  if address is None:
    address = "%d.%d.0.1" % (10 + i//256, i % 256)
  return RelayDescriptor(fingerprint="%040X" % i,
                         nickname=nickname or "relay%d" % i,
                         weight=weight, bandwidth=weight,
                         flags=frozenset(GOOD_FLAGS), family=frozenset(),
                         address=address, or_port=9001)

def snapshot(relays):
  return ConsensusSnapshot(dict((r.fingerprint, r) for r in relays), 1,
                           {"Wmm": 10000})

class FakeStore:
  def __init__(self, snapshot=None):
    self.path = "fake.state"
    self.saved = []
    self.loaded = snapshot

  def load(self):
    return self.loaded

  def save(self, snapshot):
    self.saved.append(snapshot)

class MockController:
  def __init__(self):
    self.conf = {}
    self.saved = False
    self.reject_hslayer = False
    self.countries = {}
    self.tor_conf = {}

  def set_conf(self, key, val):
    if self.reject_hslayer and key.startswith("HSLayer"):
      raise stem.InvalidArguments("552", "Unrecognized option")
    self.conf[key] = val

  def get_conf(self, key, default=None):
    return self.tor_conf.get(key, default)

  def save_conf(self):
    self.saved = True

  def get_info(self, *keys):
    return dict((k, self.countries.get(k[len("ip-to-country/"):], "??"))
                for k in keys)

def new_state(seed=1):
  return VanguardState(FakeStore(), random.Random(seed))

def test_rotate_fills_layers():
  snap = snapshot([relay(i) for i in range(1, 60)])
  state = new_state()
  now = 1000000.0

  assert state.rotate(snap, now)
  assert len(state.layer2.guards) == hsvanguards.vanguards.NUM_LAYER2_GUARDS
  assert len(state.layer3.guards) == hsvanguards.vanguards.NUM_LAYER3_GUARDS
  assert len(set(state.layer2.fingerprints())) == 4
  assert len(set(state.layer3.fingerprints())) == 8

  for g in state.layer2.guards:
    assert g.idhex in snap
    assert g.chosen_at == now
    assert 24*_SEC_PER_HOUR <= g.expires_at - now <= 24*45*_SEC_PER_HOUR
  for g in state.layer3.guards:
    assert 1*_SEC_PER_HOUR <= g.expires_at - now <= 48*_SEC_PER_HOUR

  # Every added guard was written out
  assert len(state.store.saved) == 12
  assert state.store.saved[-1] == state.snapshot()

  # Nothing to do the second time around
  saves = len(state.store.saved)
  assert not state.rotate(snap, now)
  assert len(state.store.saved) == saves

def test_seeded_rotation_is_reproducible():
  snap = snapshot([relay(i) for i in range(1, 60)])
  s1 = new_state(5)
  s2 = new_state(5)
  s1.rotate(snap, 1000.0)
  s2.rotate(snap, 1000.0)
  assert s1.snapshot() == s2.snapshot()

def test_expired_guards_replaced():
  snap = snapshot([relay(i) for i in range(1, 60)])
  state = new_state()
  state.rotate(snap, 1000.0)

  old = state.layer2.guards[0]
  old.expires_at = 2000.0
  assert state.rotate(snap, 2000.0)
  assert old not in state.layer2.guards
  assert len(state.layer2.guards) == 4
  for g in state.layer2.guards:
    assert g.expires_at > 2000.0

def test_expired_guards_replaced_above_minimum():
  relays = [relay(i) for i in range(1, 60)]
  snap = snapshot(relays)
  state = new_state()
  now = 1000.0
  state.layer2.guards = [GuardNode(r.fingerprint, now, now+_SEC_PER_HOUR*48)
                         for r in relays[:6]]
  old = state.layer2.guards[2]
  old.expires_at = now

  assert state.rotate(snap, now)
  assert old not in state.layer2.guards
  assert len(state.layer2.guards) == 6
  assert len(set(state.layer2.fingerprints())) == 6

  # A full layer stays full
  state.layer2.guards = [GuardNode(r.fingerprint, now, now+_SEC_PER_HOUR*48)
                         for r in relays[:8]]
  state.layer2.guards[0].expires_at = now
  state.layer2.guards[5].expires_at = now
  assert state.rotate(snap, now)
  assert len(state.layer2.guards) == hsvanguards.vanguards.MAX_LAYER2_GUARDS

  # Nothing expired, so nothing is added
  assert not state.rotate(snap, now)
  assert len(state.layer2.guards) == hsvanguards.vanguards.MAX_LAYER2_GUARDS

def test_exact_fill_survives_growth():
  relays = [relay(i) for i in range(1, 5)]
  state = new_state()
  state.rotate(snapshot(relays), 1000.0)
  chosen = state.layer2.fingerprints()
  assert sorted(chosen) == sorted(r.fingerprint for r in relays)

  # More relays show up, but nobody has expired
  state.rotate(snapshot([relay(i) for i in range(1, 60)]), 1060.0)
  assert state.layer2.fingerprints() == chosen

def test_down_guards_replaced():
  relays = [relay(i) for i in range(1, 60)]
  state = new_state()
  state.rotate(snapshot(relays), 1000.0)

  gone = state.layer2.guards[0].idhex
  smaller = snapshot([r for r in relays if r.fingerprint != gone])
  assert state.rotate(smaller, 1001.0)
  assert gone not in state.layer2.fingerprints()
  assert len(state.layer2.guards) == 4

def test_empty_consensus_keeps_guards():
  state = new_state()
  state.rotate(snapshot([relay(i) for i in range(1, 60)]), 1000.0)
  before = state.snapshot()
  assert not state.rotate(ConsensusSnapshot(), 1001.0)
  assert state.snapshot() == before

def test_oversized_layer_trimmed():
  relays = [relay(i) for i in range(1, 60)]
  state = new_state()
  now = 1000.0
  state.layer2.guards = [GuardNode(r.fingerprint, now, now+_SEC_PER_HOUR*48)
                         for r in relays[:10]]
  state.rotate(snapshot(relays), now)
  assert len(state.layer2.guards) == hsvanguards.vanguards.MAX_LAYER2_GUARDS
  assert state.layer2.fingerprints() == [r.fingerprint for r in relays[:8]]

def test_small_network_falls_back():
  # All in one /16, so only one relay survives subnet exclusion
  relays = [relay(i, address="10.1.0.%d" % i) for i in range(1, 4)]
  state = new_state()
  state.rotate(snapshot(relays), 1000.0)
  assert len(state.layer2.guards) == 3
  assert len(state.layer3.guards) == 3

def test_no_cross_layer_reuse(monkeypatch):
  monkeypatch.setattr(hsvanguards.vanguards, "ALLOW_CROSS_LAYER_REUSE", False)
  state = new_state()
  state.rotate(snapshot([relay(i) for i in range(1, 13)]), 1000.0)
  assert len(state.layer2.guards) == 4
  assert len(state.layer3.guards) == 8
  assert not set(state.layer2.fingerprints()) & \
             set(state.layer3.fingerprints())

def test_layer3_disabled(monkeypatch):
  monkeypatch.setattr(hsvanguards.vanguards, "NUM_LAYER3_GUARDS", 0)
  state = new_state()
  state.rotate(snapshot([relay(i) for i in range(1, 60)]), 1000.0)
  assert len(state.layer3.guards) == 0
  assert len(state.layers()) == 1

  controller = MockController()
  state.configure_tor(controller)
  assert "HSLayer3Nodes" not in controller.conf

def test_exclude_nodes_parsing():
  fp = "%040X" % 1
  excl = ExcludeNodes("$"+fp+"~relay1,{us},10.5.0.0/16,badnick,{bad}",
                      "auto")
  assert excl.idhexes == set([fp])
  assert excl.countries == set(["us", "??", "a1"])
  assert excl.nicks == set(["badnick"])
  assert len(excl.networks) == 1
  assert excl.has_exclusions()

  assert excl.router_is_excluded(relay(1))
  assert excl.router_is_excluded(relay(2, nickname="badnick"))
  assert excl.router_is_excluded(relay(3, address="10.5.3.4"))
  assert excl.router_is_excluded(relay(4), "us")
  assert not excl.router_is_excluded(relay(5, address="192.0.2.5"), "de")

  assert not ExcludeNodes("", "auto").has_exclusions()
  assert ExcludeNodes("", "1").countries == set(["??", "a1"])

def test_excluded_guards_removed():
  relays = [relay(i) for i in range(1, 60)]
  snap = snapshot(relays)
  state = new_state()
  state.rotate(snap, 1000.0)

  bad = state.layer3.guards[0].idhex
  controller = MockController()
  controller.tor_conf["ExcludeNodes"] = bad
  state.update_exclusions(controller)
  assert state.rotate(snap, 1001.0)
  assert bad not in state.layer3.fingerprints()
  assert bad not in state.layer2.fingerprints()
  assert len(state.layer3.guards) == 8

def test_country_exclusions():
  relays = [relay(i) for i in range(1, 5)]
  controller = MockController()
  controller.countries[relays[0].address] = "US"
  controller.countries[relays[1].address] = "de"
  excl = ExcludeNodes("{us}", "0")
  excluded = excl.excluded_fingerprints(snapshot(relays), controller)
  assert excluded == set([relays[0].fingerprint])

def test_configure_tor(monkeypatch):
  state = new_state()
  state.rotate(snapshot([relay(i) for i in range(1, 60)]), 1000.0)

  controller = MockController()
  state.configure_tor(controller)
  assert controller.conf["HSLayer2Nodes"] == state.layer2_guardset()
  assert controller.conf["HSLayer3Nodes"] == state.layer3_guardset()
  assert controller.conf["NumEntryGuards"] == "2"
  assert "GuardLifetime" not in controller.conf
  assert not controller.saved

  monkeypatch.setattr(hsvanguards.vanguards, "LAYER1_LIFETIME_DAYS", 30)
  state.configure_tor(controller, save_conf=True)
  assert controller.conf["GuardLifetime"] == "30 days"
  assert controller.saved

  controller.reject_hslayer = True
  with pytest.raises(SystemExit):
    state.configure_tor(controller)

def test_state_survives_restart(tmp_path):
  store = PersistenceStore(str(tmp_path / "vanguards.state"))
  state = VanguardState.load_or_create(store, random.Random(3))
  state.rotate(snapshot([relay(i) for i in range(1, 60)]), 1000.0)

  reloaded = VanguardState.load_or_create(store)
  assert reloaded.snapshot() == state.snapshot()
  assert reloaded.layer2_guardset() == state.layer2_guardset()
