from decimal import Decimal

from rocket_crash.engine import (
    CrashPointSampler,
    FixedCrashPoint,
    GameConfig,
    multiplier_at,
)


class StubRandom:
    def __init__(self, value):
        self.value = value

    def random(self):
        return self.value


def test_multiplier_starts_at_one():
    assert multiplier_at(0) == Decimal("1.00")
    assert multiplier_at(0.0) == Decimal("1.00")


def test_multiplier_negative_elapsed_is_clamped():
    assert multiplier_at(-2.5) == Decimal("1.00")


def test_multiplier_known_values():
    # 1 + 0.14 * 3 + 0.075 * 9 = 2.095
    assert multiplier_at(3.0) == Decimal("2.10")
    # 1 + 0.70 + 1.875 = 3.575
    assert multiplier_at(5.0) == Decimal("3.58")
    assert multiplier_at(2.0) == Decimal("1.58")
    assert multiplier_at(Decimal("10")) == Decimal("9.90")


def test_multiplier_is_monotonic():
    previous = multiplier_at(0)
    t = Decimal("0")
    while t <= 30:
        current = multiplier_at(t)
        assert current >= previous
        previous = current
        t += Decimal("0.01")


def test_multiplier_is_pure():
    assert multiplier_at(4.321) == multiplier_at(4.321)


def test_sampler_stays_in_range():
    sampler = CrashPointSampler(seed=42)
    for _ in range(5000):
        point = sampler.sample()
        assert GameConfig.MIN_CRASH <= point <= GameConfig.MAX_CRASH


def test_sampler_lower_bound_at_zero_draw():
    assert CrashPointSampler(rng=StubRandom(0.0)).sample() == Decimal("1.25")


def test_sampler_formula_midpoint():
    # 1.25 + (1 / 0.5 - 1) * 0.85
    assert CrashPointSampler(rng=StubRandom(0.5)).sample() == Decimal("2.10")


def test_sampler_caps_heavy_tail():
    assert CrashPointSampler(rng=StubRandom(0.999999)).sample() == Decimal("22.00")


def test_seeded_samplers_repeat():
    first = CrashPointSampler(seed=7)
    second = CrashPointSampler(seed=7)
    assert [first.sample() for _ in range(20)] == [second.sample() for _ in range(20)]


def test_sampler_favours_low_multipliers():
    sampler = CrashPointSampler(seed=1)
    points = [sampler.sample() for _ in range(2000)]
    below_three = sum(1 for p in points if p < 3)
    assert below_three > len(points) / 2


def test_fixed_crash_point():
    sampler = FixedCrashPoint(3)
    assert sampler.sample() == Decimal("3.00")
    assert sampler.sample() == Decimal("3.00")
