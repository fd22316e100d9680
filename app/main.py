"""
Streamlit Frontend for the Event Budget Ledger

The budget panel of the event-planner dashboard.

DESIGN PRINCIPLES:
1. Every figure on screen comes from a fresh ledger snapshot
2. Every change goes through the reconciliation engine
3. Clear error messages in simple language
4. Other open tabs refresh when the ledger changes

The engine is async and keeps per-category locks, so all sessions share
one event loop running in a background thread.
"""

import asyncio
import threading
from datetime import date
from decimal import Decimal
from uuid import uuid4

import streamlit as st

from budget_ledger.config import get_settings, validate_all_settings
from budget_ledger.errors import (
    ConflictError,
    LedgerError,
    NotFoundError,
    StorageUnavailableError,
    ValidationError,
)
from budget_ledger.models.ledger import LedgerSnapshot
from budget_ledger.orchestrator import LedgerComponents, create_app_components
from budget_ledger.queries import summarize_snapshot


# Page configuration
st.set_page_config(
    page_title="Event Budget",
    page_icon="💰",
    layout="wide",
    initial_sidebar_state="expanded",
)

st.markdown("""
<style>
    .stButton>button {
        width: 100%;
        margin-top: 10px;
    }
    .warning-box {
        padding: 20px;
        background-color: #fff3cd;
        border-radius: 10px;
        border-left: 5px solid #ffc107;
        margin: 10px 0;
    }
</style>
""", unsafe_allow_html=True)


@st.cache_resource
def get_event_loop() -> asyncio.AbstractEventLoop:
    """One long-lived loop shared by every session."""
    loop = asyncio.new_event_loop()
    threading.Thread(target=loop.run_forever, name="ledger-loop", daemon=True).start()
    return loop


def run_async(coro):
    """Helper to run engine coroutines from Streamlit's script thread."""
    return asyncio.run_coroutine_threadsafe(coro, get_event_loop()).result()


@st.cache_resource
def get_components() -> LedgerComponents:
    """Get or create application components (cached)."""
    components = create_app_components()

    async def start_sweeper():
        components.engine.start_periodic_sweep()

    run_async(start_sweeper())
    return components


@st.cache_resource
def get_change_versions() -> dict[str, int]:
    """owner_id -> number of change notifications seen, shared across sessions."""
    return {}


def watch_owner(components: LedgerComponents, owner_id: str) -> None:
    """Subscribe once per owner; the handler bumps that owner's change version."""
    versions = get_change_versions()
    if owner_id in versions:
        return
    versions[owner_id] = 0

    def on_change():
        versions[owner_id] = versions.get(owner_id, 0) + 1

    components.notifier.subscribe(owner_id, on_change)


@st.fragment(run_every="2s")
def change_watcher(owner_id: str) -> None:
    """Rerun the page when another session changed this owner's ledger."""
    current = get_change_versions().get(owner_id, 0)
    seen = st.session_state.get("seen_version")
    st.session_state.seen_version = current
    if seen is not None and seen != current:
        st.rerun()


def format_money(value: Decimal) -> str:
    return f"₹{value:,.2f}"


def show_ledger_error(error: LedgerError) -> None:
    """Render an engine error in plain language."""
    if isinstance(error, ValidationError):
        st.error(f"Please check your input: {error}")
    elif isinstance(error, NotFoundError):
        st.error("That item no longer exists. The page has been refreshed.")
    elif isinstance(error, ConflictError):
        st.warning("Someone else changed this at the same time. Please try again.")
    elif isinstance(error, StorageUnavailableError):
        st.error("Could not save right now. Your budget is safe - please try again in a moment.")
    else:
        st.error(f"Something went wrong: {error}")


def main():
    """Main application entry point."""
    components = get_components()

    st.sidebar.title("💰 Event Budget")
    owner_id = st.sidebar.text_input(
        "Planner",
        value=st.session_state.get("owner_id", "default-planner"),
        help="Each planner has their own budget",
    ).strip() or "default-planner"
    st.session_state.owner_id = owner_id
    st.sidebar.markdown("---")

    page = st.sidebar.radio(
        "Navigate to:",
        ["📊 Budget", "➕ Add Expense", "⚙️ Settings"],
        index=0,
    )

    watch_owner(components, owner_id)
    change_watcher(owner_id)

    try:
        snapshot = run_async(components.engine.get_snapshot(owner_id))
    except LedgerError as e:
        show_ledger_error(e)
        st.stop()

    if page == "📊 Budget":
        render_budget_page(components, snapshot)
    elif page == "➕ Add Expense":
        render_add_expense_page(components, snapshot)
    elif page == "⚙️ Settings":
        render_settings_page(components, snapshot)


def render_budget_page(components: LedgerComponents, snapshot: LedgerSnapshot):
    """Summary cards, category table and the expense list."""
    st.title("📊 Budget Overview")
    summary = summarize_snapshot(snapshot)

    col1, col2, col3, col4 = st.columns(4)
    col1.metric("Total Budget", format_money(summary.total_budget))
    col2.metric("Allocated", format_money(summary.total_allocated))
    col3.metric("Spent", format_money(summary.total_spent))
    col4.metric(
        "Remaining",
        format_money(summary.remaining_budget),
        delta="Over budget" if summary.is_over_budget else None,
        delta_color="inverse",
    )

    if snapshot.pending_reconciliation:
        st.markdown("""
        <div class="warning-box">
            Some category totals are being re-checked after a storage problem.
            Figures may be briefly out of date.
        </div>
        """, unsafe_allow_html=True)

    if summary.overspent_categories:
        st.warning("Overspent: " + ", ".join(summary.overspent_categories))

    st.markdown("### Categories")
    st.dataframe(
        [
            {
                "Category": c.name,
                "Allocated": float(c.allocated_amount),
                "Spent": float(c.spent_amount),
                "Remaining": float(c.remaining_amount),
                "Used %": float(c.utilization_percent),
                "Expenses": c.expense_count,
            }
            for c in summary.categories
        ],
        use_container_width=True,
        hide_index=True,
    )

    st.markdown("### Expenses")
    if not snapshot.expenses:
        st.info("No expenses yet. Use 'Add Expense' to record the first one.")
        return

    names = {c.id: c.name for c in snapshot.categories}
    for expense in snapshot.expenses:
        label = (
            f"{expense.expense_date.isoformat()} · {names.get(expense.category_id, '?')} · "
            f"{expense.description} · {format_money(expense.amount)}"
        )
        with st.expander(label):
            render_edit_expense_form(components, snapshot, expense)


def render_edit_expense_form(components: LedgerComponents, snapshot: LedgerSnapshot, expense):
    """Edit or delete one expense."""
    category_ids = [c.id for c in snapshot.categories]
    names = {c.id: c.name for c in snapshot.categories}

    with st.form(f"edit-{expense.id}"):
        category_id = st.selectbox(
            "Category",
            options=category_ids,
            index=category_ids.index(expense.category_id) if expense.category_id in category_ids else 0,
            format_func=lambda cid: names[cid],
        )
        description = st.text_input("Description", value=expense.description)
        amount = st.number_input(
            "Amount",
            min_value=0.01,
            value=float(expense.amount),
            step=100.0,
            format="%.2f",
        )
        expense_date = st.date_input("Date", value=expense.expense_date)

        col1, col2 = st.columns(2)
        save = col1.form_submit_button("💾 Save changes", type="primary")
        delete = col2.form_submit_button("🗑️ Delete")

    if save:
        try:
            run_async(components.engine.edit_expense(
                st.session_state.owner_id,
                expense.id,
                new_category_id=category_id,
                new_amount=Decimal(str(amount)).quantize(Decimal("0.01")),
                new_description=description,
                new_date=expense_date,
            ))
            st.success("Expense updated.")
            st.rerun()
        except LedgerError as e:
            show_ledger_error(e)

    if delete:
        try:
            run_async(components.engine.delete_expense(st.session_state.owner_id, expense.id))
            st.success("Expense deleted.")
            st.rerun()
        except LedgerError as e:
            show_ledger_error(e)


def render_add_expense_page(components: LedgerComponents, snapshot: LedgerSnapshot):
    """Record a new expense."""
    st.title("➕ Add Expense")

    # One key per form instance so a double submit records a single expense
    if "add_expense_key" not in st.session_state:
        st.session_state.add_expense_key = uuid4().hex

    names = {c.id: c.name for c in snapshot.categories}
    with st.form("add-expense", clear_on_submit=True):
        category_id = st.selectbox(
            "Category",
            options=list(names),
            format_func=lambda cid: names[cid],
        )
        description = st.text_input("Description", placeholder="e.g. Venue deposit")
        amount = st.number_input("Amount", min_value=0.01, step=100.0, format="%.2f")
        expense_date = st.date_input("Date", value=date.today())
        submitted = st.form_submit_button("Add Expense", type="primary")

    if submitted:
        try:
            expense = run_async(components.engine.add_expense(
                st.session_state.owner_id,
                category_id,
                description,
                Decimal(str(amount)).quantize(Decimal("0.01")),
                expense_date,
                idempotency_key=st.session_state.add_expense_key,
            ))
            st.session_state.add_expense_key = uuid4().hex
            st.success(f"Added {format_money(expense.amount)} to {names[category_id]}.")
        except LedgerError as e:
            show_ledger_error(e)


def render_settings_page(components: LedgerComponents, snapshot: LedgerSnapshot):
    """Total budget, custom categories, reset and connection status."""
    st.title("⚙️ Settings")

    st.markdown("### Total Budget")
    with st.form("total-budget"):
        new_total = st.number_input(
            "Total event budget",
            min_value=0.0,
            value=float(snapshot.settings.total_budget),
            step=10000.0,
            format="%.2f",
        )
        if st.form_submit_button("Update budget", type="primary"):
            try:
                run_async(components.engine.set_total_budget(
                    st.session_state.owner_id,
                    Decimal(str(new_total)).quantize(Decimal("0.01")),
                ))
                st.success("Budget updated and categories reallocated.")
                st.rerun()
            except LedgerError as e:
                show_ledger_error(e)

    st.markdown("### Custom Category")
    with st.form("custom-category", clear_on_submit=True):
        name = st.text_input("Name")
        allocated = st.number_input("Allocated amount", min_value=0.0, step=1000.0, format="%.2f")
        if st.form_submit_button("Add category"):
            try:
                run_async(components.engine.create_category(
                    st.session_state.owner_id,
                    name,
                    Decimal(str(allocated)).quantize(Decimal("0.01")),
                ))
                st.success(f"Category '{name}' added.")
                st.rerun()
            except LedgerError as e:
                show_ledger_error(e)

    st.markdown("### Reset")
    st.caption("Deletes every expense. Categories and the total budget are kept.")
    confirm = st.checkbox("I understand all expenses will be deleted")
    if st.button("Reset ledger", disabled=not confirm):
        try:
            removed = run_async(components.engine.reset_ledger(st.session_state.owner_id))
            st.success(f"Removed {removed} expenses.")
            st.rerun()
        except LedgerError as e:
            show_ledger_error(e)

    st.markdown("---")
    st.markdown("### Connection Status")
    status = validate_all_settings()
    backend = get_settings().ledger.storage_backend if status.get("ledger") else "unknown"
    st.write(f"Storage backend: **{backend}**")
    if backend == "google_sheets":
        if status.get("google_sheets") and components.sheets_client:
            st.success("✅ Google Sheets (Storage) - Connected")
        else:
            error = status.get("google_sheets_error", "Not configured")
            st.error(f"❌ Google Sheets (Storage) - {error}")
    st.markdown(
        "Configure the application with `LEDGER_*` and `GOOGLE_SHEETS_*` "
        "environment variables or a `.env` file."
    )


if __name__ == "__main__":
    main()
