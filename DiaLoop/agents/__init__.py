"""Signal classifiers and small state machines used by the dosing engine.

Key Components:
    - `PeakEstimator`: Predicts the peak of a rise in progress and runs
      the IDLE/WATCHING/CONFIRMED state machine.
    - `signal_classifiers`: Meal signal, rising-trend classification,
      glucose zone and dose access level.
    - `DowntrendGate`: Pause/lock latch with hysteresis on falling glucose.
    - `RescueDetector`: Flags an impending low after recent delivery.
    - `EarlyDoseController` and `micro_ramp`: Probe/boost doses at the
      start of a rise and the micro-ramp floor.
    - `PersistentCorrectionController`: Correction for stable highs.
"""

# Import the modules directly, e.g.
# from DiaLoop.agents.peak_estimator import PeakEstimator
