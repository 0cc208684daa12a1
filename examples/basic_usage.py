"""
Basic usage example for the Loop forecast controller.

Demonstrates:
- Building therapy settings for a SimGlucose virtual patient
- Running a closed-loop simulation with a LoopController
- Reading the per-step decision log
- Plotting glucose, forecast and delivery
"""

from datetime import datetime
from pathlib import Path

import matplotlib.pyplot as plt
import matplotlib.dates as mdates
import numpy as np

from simglucose.patient.t1dpatient import T1DPatient
from simglucose.sensor.cgm import CGMSensor
from simglucose.actuator.pump import InsulinPump
from simglucose.simulation.env import T1DSimEnv
from simglucose.simulation.scenario import CustomScenario

from loop_logic.config import AlgorithmConfig
from loop_sim.controller import LoopController


def main():
    print("=" * 60)
    print("Loop Forecast Controller - Basic Usage Example")
    print("=" * 60)

    # 1. SimGlucose components
    print("\n1. Setting up SimGlucose environment...")
    patient = T1DPatient.withName("adolescent#001")
    sensor = CGMSensor.withName("Dexcom", seed=1)
    pump = InsulinPump.withName("Insulet")
    # meal times are hours after start_time
    scenario = CustomScenario(
        start_time=datetime(2025, 1, 1, 6, 0, 0), scenario=[(1, 45), (6, 60), (12, 70)]
    )
    env = T1DSimEnv(patient, sensor, pump, scenario)

    print(f"   - Patient: {patient.name}")
    print(f"   - Meals: 45 g @ 07:00, 60 g @ 12:00, 70 g @ 18:00")

    # 2. Therapy settings (steady-state basal of the virtual patient, U/hr)
    basal = patient._params.u2ss * patient._params.BW / 6000.0 * 60.0
    profile = {
        "current_basal": basal,
        "sens": 50.0,
        "carb_ratio": 10.0,
        "min_bg": 100.0,
        "max_bg": 115.0,
        "max_basal": 4.0 * basal,
        "max_bolus": 5.0,
        "suspend_threshold": 70.0,
    }
    config = AlgorithmConfig(integral_retrospective_correction=True, automatic_bolus=True)
    controller = LoopController(profile, config=config, max_log_size=1000)

    print(f"\n2. Therapy settings:")
    print(f"   - Basal: {basal:.2f} U/hr (max {profile['max_basal']:.2f})")
    print(f"   - ISF: {profile['sens']:.0f} mg/dL/U, CR: {profile['carb_ratio']:.0f} g/U")
    print(f"   - Correction range: {profile['min_bg']:.0f}-{profile['max_bg']:.0f} mg/dL")

    # 3. Closed loop
    print("\n3. Running 18-hour closed-loop simulation...")
    print("   Time     | Glucose | Eventual | IOB   | COB  | Basal")
    print("   " + "-" * 56)

    obs, reward, done, info = env.reset()
    steps = int(18 * 60 / env.sensor.sample_time)
    for i in range(steps):
        action = controller.policy(obs, reward, done, **info)
        obs, reward, done, info = env.step(action)

        if i % 20 == 0:
            row = controller.get_decision_log().iloc[-1]
            eventual = row["eventual_bg"] if row["eventual_bg"] is not None else np.nan
            print(
                f"   {row.name.strftime('%H:%M')}    | "
                f"{row['cgm']:6.1f}  | "
                f"{eventual:7.1f}  | "
                f"{row['iob'] or 0.0:5.2f} | "
                f"{row['cob'] or 0.0:4.0f} | "
                f"{row['basal_u_per_hr']:5.2f}"
            )

        if done:
            print(f"\n   Simulation ended early at step {i}")
            break

    # 4. Summary
    log = controller.get_decision_log()
    cgm = log["cgm"].to_numpy()
    print("\n4. Results Summary:")
    print(f"   - Mean glucose: {np.mean(cgm):.1f} mg/dL")
    print(f"   - Time in range (70-180): {100.0 * np.mean((cgm >= 70) & (cgm <= 180)):.1f}%")
    print(f"   - Min / max glucose: {np.min(cgm):.1f} / {np.max(cgm):.1f} mg/dL")
    print(f"   - Automatic boluses: {log['bolus_u'].sum():.2f} U in {(log['bolus_u'] > 0).sum()} doses")
    print(f"   - Failed cycles: {log['error'].notna().sum()}")

    # 5. Plot
    fig, axes = plt.subplots(3, 1, figsize=(12, 10), sharex=True)

    axes[0].plot(log.index, log["cgm"], color="black", label="CGM")
    axes[0].plot(log.index, log["eventual_bg"].astype(float), color="tab:blue", alpha=0.6, label="Eventual BG")
    axes[0].axhspan(profile["min_bg"], profile["max_bg"], color="green", alpha=0.1, label="Correction range")
    axes[0].axhline(profile["suspend_threshold"], color="red", linestyle="--", label="Suspend threshold")
    axes[0].set_ylabel("Glucose (mg/dL)")
    axes[0].set_title("Closed-loop glucose and forecast")
    axes[0].grid(True, alpha=0.3)
    axes[0].legend(loc="upper right")

    axes[1].plot(log.index, log["iob"].astype(float), color="purple", label="IOB (U)")
    axes[1].plot(log.index, log["cob"].astype(float) / 10.0, color="orange", label="COB (10 g)")
    axes[1].set_ylabel("On board")
    axes[1].grid(True, alpha=0.3)
    axes[1].legend(loc="upper right")

    axes[2].step(log.index, log["basal_u_per_hr"], where="post", color="tab:blue", label="Basal (U/hr)")
    axes[2].bar(log.index, log["bolus_u"], width=0.002, color="tab:red", label="Auto bolus (U)")
    axes[2].axhline(basal, color="gray", linestyle="--")
    axes[2].set_ylabel("Delivery")
    axes[2].set_xlabel("Time")
    axes[2].grid(True, alpha=0.3)
    axes[2].legend(loc="upper right")

    for ax in axes:
        ax.xaxis.set_major_formatter(mdates.DateFormatter("%H:%M"))
        ax.xaxis.set_major_locator(mdates.HourLocator(interval=2))

    fig.tight_layout()
    out = Path("results") / "loop_basic_usage.png"
    out.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(out, dpi=150, bbox_inches="tight")
    plt.close(fig)
    print(f"\n5. Plot saved to {out}")

    print("\n" + "=" * 60)
    print("Simulation complete!")
    print("=" * 60)


if __name__ == "__main__":
    main()
