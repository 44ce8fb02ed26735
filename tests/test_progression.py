"""Tests for the jutsu progression state machine."""

import asyncio

import pytest

from jutsu_engine.errors import UnknownJutsu
from jutsu_engine.progression import EventKind, JutsuSession, Phase
from jutsu_engine.seals import SealLabel


def make_session(**kwargs):
    events = []
    session = JutsuSession(**kwargs)
    session.on_event(events.append)
    return session, events


def hold(session, label, ticks):
    out = []
    for _ in range(ticks):
        out.extend(session.observe(label))
    return out


class TestSelection:
    def test_starts_idle(self):
        session, _ = make_session()
        assert session.phase == Phase.IDLE
        assert session.target is None
        assert session.ticket() is None

    def test_select_awaits_first_seal(self):
        session, events = make_session()
        session.select("chidori")
        assert session.phase == Phase.AWAITING
        assert session.current_step == 0
        assert session.target == SealLabel.OX
        assert session.capturing
        assert events[-1].kind == EventKind.SELECTED
        assert "Ox" in events[-1].message

    def test_select_unknown(self):
        session, _ = make_session()
        with pytest.raises(UnknownJutsu):
            session.select("rasengan")

    def test_reselect_restarts(self):
        session, _ = make_session()
        session.select("chidori")
        hold(session, SealLabel.OX, 8)
        assert session.current_step == 1
        session.select("chidori")
        assert session.current_step == 0
        assert session.hold_progress == 0

    def test_chinese_messages(self):
        session, events = make_session(language="zh")
        session.select("chidori")
        assert "丑" in events[-1].message


class TestHold:
    def test_increment(self):
        session, _ = make_session(hold_duration=0.8, tick_interval=0.1)
        assert session.hold_increment == pytest.approx(12.5)

    def test_eight_ticks_advance_one_step(self):
        session, events = make_session(hold_duration=0.8, tick_interval=0.1)
        session.select("chidori")
        hold(session, SealLabel.OX, 7)
        assert session.current_step == 0
        assert session.phase == Phase.HOLDING
        assert session.hold_progress == pytest.approx(87.5)

        session.observe(SealLabel.OX)
        assert session.current_step == 1
        assert session.hold_progress == 0
        assert session.target == SealLabel.RAM
        assert events[-1].kind == EventKind.STEP_ADVANCED

    def test_neural_hold_is_faster(self):
        session, _ = make_session(hold_duration=0.4, tick_interval=0.1)
        session.select("chidori")
        hold(session, SealLabel.OX, 4)
        assert session.current_step == 1

    def test_mismatch_resets(self):
        session, events = make_session()
        session.select("chidori")
        hold(session, SealLabel.OX, 3)
        assert session.hold_progress > 0

        session.observe(SealLabel.TIGER)
        assert session.hold_progress == 0
        assert session.current_step == 0
        assert events[-1].kind == EventKind.MISMATCH

    def test_no_seal_counts_as_mismatch(self):
        session, _ = make_session()
        session.select("chidori")
        hold(session, SealLabel.OX, 5)
        session.observe(None)
        assert session.hold_progress == 0

    def test_mismatch_without_progress_is_silent(self):
        session, events = make_session()
        session.select("chidori")
        assert session.observe(SealLabel.DOG) == []
        assert events[-1].kind == EventKind.SELECTED

    def test_no_partial_credit_across_mismatch(self):
        session, _ = make_session()
        session.select("chidori")
        hold(session, SealLabel.OX, 7)
        session.observe(None)
        hold(session, SealLabel.OX, 7)
        assert session.current_step == 0

    def test_string_labels(self):
        session, _ = make_session()
        session.select("chidori")
        hold(session, "ox", 8)
        assert session.current_step == 1

    def test_idle_ignores_observations(self):
        session, _ = make_session()
        assert session.observe(SealLabel.OX) == []
        assert session.phase == Phase.IDLE


class TestActivation:
    def run_chidori(self, session):
        session.select("chidori")
        for seal in (SealLabel.OX, SealLabel.RAM, SealLabel.MONKEY):
            hold(session, seal, 8)

    def test_full_sequence_activates(self):
        session, events = make_session()
        self.run_chidori(session)
        assert session.phase == Phase.ACTIVATING
        assert session.activating == "chidori"
        assert session.current_step == 3
        assert session.hold_progress == 0
        assert session.target is None
        kinds = [e.kind for e in events]
        assert kinds.count(EventKind.STEP_ADVANCED) == 2
        assert kinds[-1] == EventKind.ACTIVATED
        assert "Chidori" in events[-1].message

    def test_activation_costs_chakra(self):
        session, _ = make_session(chakra=100)
        self.run_chidori(session)
        assert session.chakra == 70

    def test_chakra_clamped_at_zero(self):
        session, _ = make_session(chakra=10)
        self.run_chidori(session)
        assert session.chakra == 0

    def test_activating_ignores_input(self):
        session, _ = make_session()
        self.run_chidori(session)
        assert session.observe(SealLabel.MONKEY) == []
        assert session.confirm(True) == []

    def test_finish_activation_returns_to_idle(self):
        session, events = make_session()
        self.run_chidori(session)
        session.finish_activation()
        assert session.phase == Phase.IDLE
        assert session.jutsu is None
        assert not session.capturing
        assert events[-1].kind == EventKind.IDLE

    def test_idle_after_display_time(self):
        async def scenario():
            session, _ = make_session(activation_display=0.01)
            self.run_chidori(session)
            assert session.phase == Phase.ACTIVATING
            await asyncio.sleep(0.1)
            phase = session.phase
            await session.close()
            return phase

        assert asyncio.run(scenario()) == Phase.IDLE


class TestAbandon:
    def test_abandon_resets(self):
        session, events = make_session(chakra=60)
        session.select("chidori")
        hold(session, SealLabel.OX, 8)
        session.abandon()
        assert session.phase == Phase.IDLE
        assert session.current_step == 0
        assert session.chakra == 60
        assert events[-1].kind == EventKind.ABANDONED

    def test_abandon_when_idle(self):
        session, _ = make_session()
        assert session.abandon() == []


class TestChakra:
    def test_regenerates_to_ceiling(self):
        session, _ = make_session(chakra=50, regen_amount=5)
        for _ in range(10):
            session.regenerate()
        assert session.chakra == 100
        session.regenerate()
        assert session.chakra == 100

    def test_starting_chakra_clamped(self):
        session, _ = make_session(chakra=150)
        assert session.chakra == 100


class TestOneShot:
    def test_confirm_advances_immediately(self):
        session, events = make_session(hold_duration=None)
        session.select("chidori")
        session.confirm(True, session.ticket())
        assert session.current_step == 1
        session.confirm(True, session.ticket())
        session.confirm(True, session.ticket())
        assert session.activating == "chidori"

    def test_rejection_carries_tip(self):
        session, events = make_session(hold_duration=None)
        session.select("chidori")
        session.confirm(False, session.ticket(), tip="Raise your left hand.")
        assert session.current_step == 0
        assert events[-1].kind == EventKind.REJECTED
        assert events[-1].message == "Raise your left hand."

    def test_stale_ticket_after_reselect(self):
        session, _ = make_session(hold_duration=None)
        session.select("chidori")
        ticket = session.ticket()
        session.abandon()
        session.select("chidori")
        assert session.confirm(True, ticket) == []
        assert session.current_step == 0

    def test_stale_ticket_after_step_change(self):
        session, _ = make_session(hold_duration=None)
        session.select("chidori")
        ticket = session.ticket()
        session.confirm(True, session.ticket())
        assert not session.is_current(ticket)
        assert session.confirm(True, ticket) == []
        assert session.current_step == 1

    def test_stale_ticket_other_jutsu(self):
        session, _ = make_session(hold_duration=None)
        session.select("chidori")
        ticket = session.ticket()
        session.select("fireball")
        assert session.confirm(True, ticket) == []
        assert session.target == SealLabel.SNAKE


class TestBackgroundTasks:
    def test_regen_runs_and_stops(self):
        async def scenario():
            session = JutsuSession(chakra=50, regen_interval=0.01, regen_amount=5)
            await session.start()
            assert session.running
            await asyncio.sleep(0.1)
            regenerated = session.chakra
            await session.close()
            assert not session.running
            stopped_at = session.chakra
            await asyncio.sleep(0.05)
            return regenerated, stopped_at, session.chakra

        regenerated, stopped_at, later = asyncio.run(scenario())
        assert regenerated > 50
        assert later == stopped_at

    def test_hold_ticker_uses_reported_label(self):
        async def scenario():
            session = JutsuSession(hold_duration=0.04, tick_interval=0.01)
            async with session:
                session.select("chidori")
                session.report(SealLabel.OX)
                await asyncio.sleep(0.2)
            return session.current_step

        assert asyncio.run(scenario()) == 1

    def test_one_shot_session_has_no_hold_ticker(self):
        async def scenario():
            session = JutsuSession(hold_duration=None)
            await session.start()
            has_ticker = session._hold_task is not None
            await session.close()
            return has_ticker

        assert asyncio.run(scenario()) is False

    def test_snapshot(self):
        session = JutsuSession()
        session.select("summoning")
        data = session.snapshot().to_dict()
        assert data["phase"] == "awaiting"
        assert data["jutsu"] == "summoning"
        assert data["total_steps"] == 5
        assert data["target"] == "boar"
