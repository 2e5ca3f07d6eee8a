import json
import os
import threading
import time

from dataclasses import dataclass

from bgplab.errors import LoadError
from bgplab.utils.diff import diff_by_id, DiffType
from bgplab.utils.lab import load_lab_file

DEFAULTS = {
  "tick_ms": 1000,
  "tombstone_retention_ticks": 3,
  "max_convergence_rounds": 64,
  "event_history": 1000,
}

# EngineConfig
@dataclass(frozen=True)
class EngineConfig:
  tick_ms: int = 1000
  tombstone_retention_ticks: int = 3
  max_convergence_rounds: int = 64
  event_history: int = 1000
  lab_path: str = ""
  lab_watch: bool = False
  lab_dir: str = ""


class ConfigManager:
  def __init__(self, log, base_dir=None, config_path=None):
    self.log = log

    # DIR
    self.BASE_DIR    = base_dir or os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    self.CONFIG_PATH = config_path or os.path.join(self.BASE_DIR, "etc", "config.json")

    # info
    self.CONFIGINFO = {}
    self.CONFIGTIME = 0
    self.LABINFO    = {}
    self.LABTIME    = 0

    # callback for a changed lab file
    self.lab_cb = None
    self.stop   = threading.Event()
    self.wl     = None

    # init load
    self.CONFIGINFO, self.CONFIGTIME = self.load_config()
    self.ENGINE = self.normalize_config(self.CONFIGINFO)

  def attach_lab_callback(self, cb):
    self.lab_cb = cb

  # config
  def load_config(self):
    if not os.path.exists(self.CONFIG_PATH):
      self.log.warning(f"[LAB] no config at {self.CONFIG_PATH}, using defaults")
      return {}, 0
    mtime = os.path.getmtime(self.CONFIG_PATH)
    with open(self.CONFIG_PATH) as f:
      try:
        wk = json.load(f)
      except json.JSONDecodeError as e:
        raise LoadError(f"config {self.CONFIG_PATH}: {e}") from None
      return wk, mtime

  def normalize_config(self, raw) -> EngineConfig:
    eng = dict(DEFAULTS)
    eng.update(raw.get("engine", {}) or {})
    lab = raw.get("lab", {}) or {}

    for key in DEFAULTS:
      v = eng[key]
      if isinstance(v, bool) or not isinstance(v, int) or v < 0:
        raise LoadError(f"config engine.{key}: expected a non-negative integer, got {v!r}")
    if eng["tick_ms"] == 0:
      raise LoadError("config engine.tick_ms: must be positive")

    return EngineConfig(
      tick_ms=eng["tick_ms"],
      tombstone_retention_ticks=eng["tombstone_retention_ticks"],
      max_convergence_rounds=eng["max_convergence_rounds"],
      event_history=eng["event_history"],
      lab_path=self.resolve(lab.get("path", "")),
      lab_watch=bool(lab.get("watch", False)),
      lab_dir=self.resolve(lab.get("dir", os.path.join("etc", "labs"))),
    )

  def resolve(self, path):
    if not path:
      return ""
    if os.path.isabs(path):
      return path
    return os.path.join(self.BASE_DIR, path)

  # lab
  def load_lab(self):
    path = self.ENGINE.lab_path
    if not path:
      return None
    mtime = os.path.getmtime(path)
    doc = load_lab_file(path)
    self.LABINFO, self.LABTIME = doc, mtime
    return doc

  def start_watchers(self):
    if not (self.ENGINE.lab_watch and self.ENGINE.lab_path):
      return False
    self.wl = threading.Thread(target=self.lab_file_watcher, daemon=True)
    self.wl.start()
    return True

  def stop_watchers(self):
    self.stop.set()

  def check_lab_file(self):
    """Reload the lab file if its mtime moved. Returns the diffs seen."""
    path = self.ENGINE.lab_path
    try:
      wktime = os.path.getmtime(path)
    except OSError:
      return []
    if wktime == self.LABTIME:
      return []

    try:
      wkdata = load_lab_file(path)
    except LoadError as e:
      # keep the old mtime so a fixed file is picked up
      self.log.warning(f"[LAB] {e}")
      return []

    diffs = []
    for key in ("routers", "neighbors"):
      for d in diff_by_id(self.LABINFO.get(key), wkdata.get(key)):
        self.log.info(f"[LAB] {key[:-1]} {d['id']} {d['type'].name}")
        diffs.append(dict(d, kind=key))
    if self.LABINFO.get("initialRibs") != wkdata.get("initialRibs"):
      self.log.info("[LAB] initialRibs changed")
      diffs.append({"type": DiffType.MOD, "id": "initialRibs", "kind": "initialRibs"})

    self.LABINFO = wkdata
    self.LABTIME = wktime
    if self.lab_cb is not None:
      self.lab_cb({
        "type": "LAB_CONFIG",
        "doc": wkdata,
        "diff": diffs,
      })
    return diffs

  def lab_file_watcher(self):
    while not self.stop.is_set():
      try:
        self.check_lab_file()
      except LoadError as e:
        self.log.error(f"[LAB] reload failed: {e}")
      time.sleep(1)
