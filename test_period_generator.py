"""
Tests de la génération séquentielle des bulletins
"""
import threading
from datetime import date
from decimal import Decimal

import pytest

from conftest import CancellingStore, InMemoryPayslipStore, UnavailableDirectory
from paie.exceptions import InternalConsistencyError, InvalidInputError
from paie.lifecycle import PayslipLifecycle
from paie.period_generator import (EmployeeLeaveState, GenerationRequest, PeriodGenerator)
from paie.rules import BaseType, ContributionDefinition, ContributionRuleSet, RuleSetRegistry


def q1_request(**overrides):
    params = dict(employee_id='E001', start_date=date(2024, 1, 1), end_date=date(2024, 3, 31))
    params.update(overrides)
    return GenerationRequest(**params)


def test_generates_each_month(directory, store, simple_registry):
    report = PeriodGenerator(directory, store, simple_registry).generate(q1_request())

    assert [o.period_start for o in report.generated] == [
        date(2024, 1, 1), date(2024, 2, 1), date(2024, 3, 1)
    ]
    assert report.skipped == [] and report.failed == []
    assert not report.cancelled
    assert len(store.payslips) == 3


def test_partial_month_dates_widen_to_whole_months(directory, store, simple_registry):
    request = q1_request(start_date=date(2024, 1, 20), end_date=date(2024, 2, 3))
    report = PeriodGenerator(directory, store, simple_registry).generate(request)

    payslip = store.payslips[('E001', date(2024, 2, 1))]
    assert len(report.generated) == 2
    assert payslip.period_end == date(2024, 2, 29)
    assert payslip.payment_date == date(2024, 3, 5)
    assert payslip.fiscal_year == 2024


def test_second_run_skips_everything(directory, store, simple_registry):
    generator = PeriodGenerator(directory, store, simple_registry)
    generator.generate(q1_request())
    report = generator.generate(q1_request())

    assert report.generated == []
    assert [o.period_start for o in report.skipped] == [
        date(2024, 1, 1), date(2024, 2, 1), date(2024, 3, 1)
    ]
    assert all(o.reason == 'existing' for o in report.skipped)
    assert len(store.payslips) == 3


def test_skipped_month_does_not_touch_leave(directory, store, simple_registry):
    generator = PeriodGenerator(directory, store, simple_registry)
    generator.generate(q1_request(start_date=date(2024, 2, 1), end_date=date(2024, 2, 29)))
    # balance after February: 5.0 + 2.5
    report = generator.generate(q1_request())

    assert len(report.skipped) == 1
    assert report.final_leave_balance == Decimal('12.5')
    assert store.payslips[('E001', date(2024, 3, 1))].paid_leave_remaining == Decimal('12.5')


def test_leave_balance_carried_forward(directory, store, simple_registry):
    report = PeriodGenerator(directory, store, simple_registry).generate(q1_request())

    remaining = [store.payslips[('E001', o.period_start)].paid_leave_remaining for o in report.generated]
    assert remaining == [Decimal('7.5'), Decimal('10.0'), Decimal('12.5')]
    assert report.final_leave_balance == Decimal('12.5')
    assert directory.balance_updates == [
        ('E001', Decimal('7.5')), ('E001', Decimal('10.0')), ('E001', Decimal('12.5'))
    ]


def test_balance_write_failure_still_returns_report(employee, store, simple_registry):
    directory = UnavailableDirectory(employee)
    report = PeriodGenerator(directory, store, simple_registry).generate(q1_request())

    assert len(report.generated) == 3
    assert len(store.payslips) == 3
    assert report.final_leave_balance == Decimal('12.5')
    assert 'annuaire indisponible' in report.balance_error
    assert all(any('Solde de congés' in w for w in o.warnings) for o in report.generated)
    assert report.to_dict()['balance_error'] == report.balance_error


def test_balance_catches_up_after_a_failed_write(employee, simple_registry):
    directory = UnavailableDirectory(employee)

    class RecoveringStore(InMemoryPayslipStore):
        def create(self, payslip):
            payslip_id = super().create(payslip)
            if payslip.period_start == date(2024, 2, 1):
                directory.available = True
            return payslip_id

    report = PeriodGenerator(directory, RecoveringStore(), simple_registry).generate(q1_request())

    assert report.balance_error is None
    assert directory.balance_updates == [('E001', Decimal('10.0')), ('E001', Decimal('12.5'))]
    assert report.generated[0].warnings != [] and report.generated[2].warnings == []


def test_leave_balance_without_accrual(directory, store, simple_registry):
    report = PeriodGenerator(directory, store, simple_registry).generate(
        q1_request(include_paid_leave=False)
    )

    assert report.final_leave_balance == Decimal('5.0')
    assert all(p.paid_leave_acquired == 0 for p in store.payslips.values())


def test_leave_taken(directory, store, simple_registry):
    request = q1_request(paid_leave_taken={date(2024, 2, 12): Decimal('3')})
    report = PeriodGenerator(directory, store, simple_registry).generate(request)

    february = store.payslips[('E001', date(2024, 2, 1))]
    assert february.paid_leave_taken == Decimal('3')
    assert february.paid_leave_remaining == Decimal('7.0')
    assert report.final_leave_balance == Decimal('9.5')


def test_leave_state_sequence():
    state = EmployeeLeaveState(Decimal('5.0'))
    balances = []
    for acquired, taken in [(Decimal('2.5'), Decimal('0')), (Decimal('2.5'), Decimal('4')),
                            (Decimal('0'), Decimal('1'))]:
        state.commit(state.next_balance(acquired, taken))
        balances.append(state.current_balance)

    assert balances == [Decimal('7.5'), Decimal('6.0'), Decimal('5.0')]


def test_ytd_cumulative_gross(directory, store, simple_registry):
    generator = PeriodGenerator(directory, store, simple_registry)
    for month, salary in [(1, '2000'), (2, '2100'), (3, '2200')]:
        generator.generate(q1_request(start_date=date(2024, month, 1), end_date=date(2024, month, 1),
                                      fixed_salary=Decimal(salary)))

    generator.generate(q1_request(start_date=date(2024, 4, 1), end_date=date(2024, 4, 30),
                                  fixed_salary=Decimal('2300')))

    april = store.payslips[('E001', date(2024, 4, 1))]
    assert april.cumulative_gross_ytd == Decimal('8600.00')


def test_ytd_resets_on_new_fiscal_year(directory, store, simple_registry):
    PeriodGenerator(directory, store, simple_registry).generate(
        q1_request(start_date=date(2023, 11, 1), end_date=date(2024, 1, 31))
    )

    assert store.payslips[('E001', date(2023, 12, 1))].cumulative_gross_ytd == Decimal('5000.00')
    january = store.payslips[('E001', date(2024, 1, 1))]
    assert january.cumulative_gross_ytd == Decimal('2500.00')
    assert january.cumulative_net_ytd == Decimal('1775.03')


def test_range_of_25_months_is_rejected(directory, store, simple_registry):
    request = q1_request(start_date=date(2024, 1, 15), end_date=date(2026, 1, 10))

    with pytest.raises(InvalidInputError):
        PeriodGenerator(directory, store, simple_registry).generate(request)
    assert store.create_calls == 0
    assert directory.balance_updates == []


def test_range_of_24_months_is_accepted():
    assert len(q1_request(start_date=date(2024, 1, 15), end_date=date(2025, 12, 10)).months()) == 24


def test_end_before_start(directory, store, simple_registry):
    with pytest.raises(InvalidInputError):
        PeriodGenerator(directory, store, simple_registry).generate(
            q1_request(start_date=date(2024, 3, 1), end_date=date(2024, 1, 1))
        )


def test_unknown_salary_type(directory, store, simple_registry):
    with pytest.raises(InvalidInputError):
        PeriodGenerator(directory, store, simple_registry).generate(q1_request(salary_type='monthly'))


def test_hourly_salary(directory, store, simple_registry):
    request = q1_request(end_date=date(2024, 1, 31), salary_type='hourly',
                         hourly_rate=Decimal('20'), hours_worked=Decimal('151.67'))
    PeriodGenerator(directory, store, simple_registry).generate(request)

    payslip = store.payslips[('E001', date(2024, 1, 1))]
    assert payslip.gross_salary == Decimal('3033.40')
    assert payslip.hourly_rate == Decimal('20')
    assert payslip.hours_worked == Decimal('151.67')


def test_hourly_salary_falls_back_to_employee(directory, store, simple_registry):
    directory.employees['E001'].base_salary = Decimal('3000.00')
    request = q1_request(end_date=date(2024, 1, 31), salary_type='hourly')
    PeriodGenerator(directory, store, simple_registry).generate(request)

    payslip = store.payslips[('E001', date(2024, 1, 1))]
    assert payslip.gross_salary == Decimal('3000.00')
    assert payslip.hourly_rate == Decimal('16.48')
    assert payslip.hours_worked == Decimal('151.67')


def test_hourly_salary_with_rate_only_uses_base_salary(directory, store, simple_registry):
    request = q1_request(end_date=date(2024, 1, 31), salary_type='hourly', hourly_rate=Decimal('20'))
    PeriodGenerator(directory, store, simple_registry).generate(request)

    payslip = store.payslips[('E001', date(2024, 1, 1))]
    assert payslip.gross_salary == Decimal('2500.00')
    assert payslip.hourly_rate == Decimal('20')
    assert payslip.hours_worked == Decimal('151.67')


def test_write_failure_marks_only_that_month(directory, simple_registry):
    store = InMemoryPayslipStore(fail_on={date(2024, 2, 1)})
    report = PeriodGenerator(directory, store, simple_registry).generate(q1_request())

    assert [o.period_start for o in report.generated] == [date(2024, 1, 1), date(2024, 3, 1)]
    assert [o.period_start for o in report.failed] == [date(2024, 2, 1)]
    assert 'disque plein' in report.failed[0].reason
    # February's accrual was never committed
    assert store.payslips[('E001', date(2024, 3, 1))].paid_leave_remaining == Decimal('10.0')
    assert report.final_leave_balance == Decimal('10.0')


def test_duplicate_on_write_is_skipped(directory, simple_registry):
    store = InMemoryPayslipStore(duplicate_on={date(2024, 2, 1)})
    report = PeriodGenerator(directory, store, simple_registry).generate(q1_request())

    assert [o.period_start for o in report.skipped] == [date(2024, 2, 1)]
    assert report.skipped[0].reason == 'duplicate'
    assert len(report.generated) == 2


def test_inconsistent_ruleset_aborts_before_any_write(directory, store):
    absurd = ContributionRuleSet(
        'ABSURDE', date(2020, 1, 1), Decimal('3864'), Decimal('11.65'), Decimal('151.67'),
        (
            ContributionDefinition('a', 'other', 'A', BaseType.TOTAL, Decimal('100'), Decimal('0')),
            ContributionDefinition('b', 'other', 'B', BaseType.TOTAL, Decimal('100'), Decimal('0')),
        ),
    )
    with pytest.raises(InternalConsistencyError):
        PeriodGenerator(directory, store, RuleSetRegistry([absurd])).generate(q1_request())

    assert store.create_calls == 0
    assert directory.balance_updates == []


def test_negative_salary_aborts_before_any_write(directory, store, simple_registry):
    with pytest.raises(InvalidInputError):
        PeriodGenerator(directory, store, simple_registry).generate(q1_request(fixed_salary=Decimal('-1')))
    assert store.create_calls == 0


def test_cancel_before_start(directory, store, simple_registry):
    cancel = threading.Event()
    cancel.set()
    report = PeriodGenerator(directory, store, simple_registry).generate(q1_request(), cancel_event=cancel)

    assert report.cancelled
    assert report.outcomes == []
    assert directory.balance_updates == []


def test_cancel_between_months(directory, simple_registry):
    cancel = threading.Event()
    store = CancellingStore(cancel)
    report = PeriodGenerator(directory, store, simple_registry).generate(q1_request(), cancel_event=cancel)

    assert report.cancelled
    assert [o.period_start for o in report.generated] == [date(2024, 1, 1)]
    assert directory.balance_updates == [('E001', Decimal('7.5'))]


def test_validator_warnings_do_not_block(directory, store, simple_registry):
    report = PeriodGenerator(directory, store, simple_registry).generate(
        q1_request(end_date=date(2024, 1, 31), fixed_salary=Decimal('1000'))
    )

    assert len(report.generated) == 1
    assert any('SMIC' in w for w in report.generated[0].warnings)


def test_report_to_dict(directory, store, simple_registry):
    report = PeriodGenerator(directory, store, simple_registry).generate(q1_request())
    data = report.to_dict()

    assert data['generated_count'] == 3
    assert data['final_leave_balance'] == '12.5'
    assert data['generated'][0]['period_start'] == '2024-01-01'


def test_regenerate_overwrites_in_place(directory, store, simple_registry):
    generator = PeriodGenerator(directory, store, simple_registry)
    generator.generate(q1_request())
    original = store.payslips[('E001', date(2024, 2, 1))]
    march = store.payslips[('E001', date(2024, 3, 1))]

    payslip = generator.regenerate('E001', date(2024, 2, 15), fixed_salary=Decimal('3000'))

    assert payslip.id == original.id
    assert store.payslips[('E001', date(2024, 2, 1))] is payslip
    assert payslip.gross_salary == Decimal('3000.00')
    assert payslip.paid_leave_remaining == Decimal('10.0')
    assert payslip.cumulative_gross_ytd == Decimal('5500.00')
    # no cascade
    assert store.payslips[('E001', date(2024, 3, 1))] is march


def test_regenerate_keeps_recorded_leave_taken(directory, store, simple_registry):
    generator = PeriodGenerator(directory, store, simple_registry)
    generator.generate(q1_request(paid_leave_taken={date(2024, 2, 1): Decimal('2')}))

    payslip = generator.regenerate('E001', date(2024, 2, 1), include_paid_leave=False)

    assert payslip.paid_leave_taken == Decimal('2')
    assert payslip.paid_leave_acquired == Decimal('0')
    # opening balance 7.5
    assert payslip.paid_leave_remaining == Decimal('5.5')


def test_regenerate_missing_month(directory, store, simple_registry):
    with pytest.raises(InvalidInputError):
        PeriodGenerator(directory, store, simple_registry).regenerate('E001', date(2024, 5, 1))


def test_regenerate_keeps_creation_time(directory, store, simple_registry):
    generator = PeriodGenerator(directory, store, simple_registry)
    generator.generate(q1_request(end_date=date(2024, 1, 31)))
    original = store.payslips[('E001', date(2024, 1, 1))]

    payslip = generator.regenerate('E001', date(2024, 1, 1), fixed_salary=Decimal('2600'))

    assert payslip.created_at == original.created_at
    assert payslip.updated_at is not None


def test_regenerate_refuses_validated_payslip(directory, store, simple_registry):
    generator = PeriodGenerator(directory, store, simple_registry)
    generator.generate(q1_request(end_date=date(2024, 1, 31)))
    validated = PayslipLifecycle(store).validate(store.payslips[('E001', date(2024, 1, 1))].id)

    with pytest.raises(InvalidInputError, match='validé'):
        generator.regenerate('E001', date(2024, 1, 1), fixed_salary=Decimal('3000'))
    assert store.payslips[('E001', date(2024, 1, 1))] is validated


def test_regenerate_refuses_locked_payslip(directory, store, simple_registry):
    generator = PeriodGenerator(directory, store, simple_registry)
    generator.generate(q1_request(end_date=date(2024, 1, 31)))
    PayslipLifecycle(store).set_locked(store.payslips[('E001', date(2024, 1, 1))].id, True)

    with pytest.raises(InvalidInputError, match='verrouillé'):
        generator.regenerate('E001', date(2024, 1, 1), fixed_salary=Decimal('3000'))
