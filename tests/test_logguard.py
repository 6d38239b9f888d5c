import stem

from stem.response import ControlMessage

import hsvanguards.logger
import hsvanguards.logguard

from hsvanguards.logguard import LogGuard, log_event_types

hsvanguards.logger.loglevel = "WARN"

def log_event(level, message):
  s = "650 "+level+" "+message+"\r\n"
  return ControlMessage.from_str(s, "EVENT")

def closed_circ(circ_id, reason):
  s = "650 CIRC "+str(circ_id)+" CLOSED $5416F3E8F80101A133B1970495B04FDBD1C7446B~Unnamed,$855BC2DABE24C861CD887DB9B2E950424B49FC34~Logforme BUILD_FLAGS=IS_INTERNAL,NEED_CAPACITY,NEED_UPTIME PURPOSE=HS_CLIENT_REND HS_STATE=HSCR_JOINED TIME_CREATED=2018-05-04T05:50:41.751938 REASON="+reason+"\r\n"
  return ControlMessage.from_str(s, "EVENT")

class MockController:
  def __init__(self):
    self.conf = {}

  def set_conf(self, key, val):
    self.conf[key] = val

def test_event_types(monkeypatch):
  assert log_event_types() == ["NOTICE", "WARN", "ERR"]
  monkeypatch.setattr(hsvanguards.logguard, "LOG_DUMP_LEVEL", "ERROR")
  assert log_event_types() == ["ERR", "WARN"]
  monkeypatch.setattr(hsvanguards.logguard, "LOG_PROTOCOL_WARNS", False)
  assert log_event_types() == ["ERR"]
  monkeypatch.setattr(hsvanguards.logguard, "LOG_DUMP_LEVEL", "DEBUG")
  assert log_event_types() == ["DEBUG", "INFO", "NOTICE", "WARN", "ERR"]

def test_protocol_warnings(monkeypatch):
  controller = MockController()
  LogGuard(controller)
  assert controller.conf["ProtocolWarnings"] == "1"

  monkeypatch.setattr(hsvanguards.logguard, "LOG_PROTOCOL_WARNS", False)
  controller = MockController()
  LogGuard(controller)
  assert "ProtocolWarnings" not in controller.conf

def test_buffer_and_dump():
  lg = LogGuard(MockController())

  lg.log_all_event(log_event("INFO", "Too chatty"))
  assert len(lg.log_buffer) == 0

  lg.log_all_event(log_event("NOTICE", "Bootstrapped 100%: Done"))
  lg.log_all_event(log_event("WARN", "Something odd"))
  assert len(lg.log_buffer) == 2
  assert lg.log_buffer[1][1] == "WARN"
  assert lg.log_buffer[1][2] == "Something odd"

  lg.dump_log_queue("12", "Pre")
  assert len(lg.log_buffer) == 0

def test_buffer_limit(monkeypatch):
  monkeypatch.setattr(hsvanguards.logguard, "LOG_DUMP_LIMIT", 5)
  lg = LogGuard(MockController())
  for i in range(8):
    lg.log_all_event(log_event("NOTICE", "Line "+str(i)))
  assert len(lg.log_buffer) == 5
  assert lg.log_buffer[0][2] == "Line 3"

def test_dump_on_close():
  lg = LogGuard(MockController())
  lg.log_all_event(log_event("NOTICE", "Before the close"))

  lg.circ_event(closed_circ(7, "FINISHED"))
  assert len(lg.log_buffer) == 1

  lg.circ_event(closed_circ(7, "REQUESTED"))
  assert len(lg.log_buffer) == 0

  lg.log_warn_event(log_event("WARN", "Protocol warning"))
