from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

import pandas as pd
import plotly.express as px
import streamlit as st

# Add parent directory to path to support both direct execution and module import
if __name__ == "__main__" and __package__ is None:
    sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
    from tfdmarket.db import DEFAULT_DB_PATH, ENV_DB_PATH, SqliteKeyValueStore, db_session, initialize_schema, list_search_runs, load_records
    from tfdmarket.facets import FacetState, Mode, NumericRange, SortKey
    from tfdmarket.profiles import FilterProfileStore, ProfileError, ProfileSession
    from tfdmarket.query import detect_mode, evaluate, parse_price, range_from_slider, slider_window
    from tfdmarket.records import ModuleRecord
else:
    from .db import DEFAULT_DB_PATH, ENV_DB_PATH, SqliteKeyValueStore, db_session, initialize_schema, list_search_runs, load_records
    from .facets import FacetState, Mode, NumericRange, SortKey
    from .profiles import FilterProfileStore, ProfileError, ProfileSession
    from .query import detect_mode, evaluate, parse_price, range_from_slider, slider_window
    from .records import ModuleRecord

SORT_LABELS = {
    SortKey.PRICE_DESC: "Price (high to low)",
    SortKey.PRICE_ASC: "Price (low to high)",
    SortKey.NAME_ASC: "Name (A-Z)",
    SortKey.NAME_DESC: "Name (Z-A)",
}


def _range_input(label: str, bounds: NumericRange, current: NumericRange, key: str) -> NumericRange:
    """Slider over ``bounds`` widened to ``current``. A handle moved to the edge means that side is unset."""
    window = slider_window(bounds, current)
    if window is None:
        return current
    low, high, start = window
    selected = st.sidebar.slider(label, low, high, value=start, key=key)
    return range_from_slider(selected, window, current)


def _multi(label: str, options: Iterable[str], current: Iterable[str], key: str) -> Tuple[str, ...]:
    choices = list(dict.fromkeys([*options, *current]))
    return tuple(st.sidebar.multiselect(label, choices, default=list(current), key=key))


def _records_frame(records: List[ModuleRecord]) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {
                "Name": rec.name,
                "Category": rec.category,
                "Price": parse_price(rec.price),
                "Seller": rec.seller_name,
                "Status": rec.seller_status,
                "Platform": rec.platform,
                "Socket": rec.socket_type,
                "MR": rec.mr_value,
                "Rerolls": rec.reroll_value,
                "Listed": rec.reg_date,
                "Attributes": ", ".join(rec.attributes),
                "Stats": " | ".join(stat.raw for stat in rec.stats),
            }
            for rec in records
        ]
    )


def facet_controls(state: FacetState, result_schema, mode: Mode, key: str) -> FacetState:
    """Render the sidebar facets seeded from ``state`` and return the live state."""
    st.sidebar.markdown("**Listing**")
    sort = st.sidebar.selectbox(
        "Sort by",
        list(SORT_LABELS),
        index=list(SORT_LABELS).index(SortKey(state.sort)),
        format_func=SORT_LABELS.get,
        key=f"{key}:sort",
    )
    price = _range_input("Price", result_schema.price_range, state.price, f"{key}:price")
    seller = st.sidebar.text_input("Seller name contains", value=state.seller, key=f"{key}:seller")
    statuses = _multi("Seller status", result_schema.statuses, state.statuses, f"{key}:statuses")
    platforms = _multi("Platform", result_schema.platforms, state.platforms, f"{key}:platforms")
    categories = _multi("Category", result_schema.categories, state.categories, f"{key}:categories")
    sockets = _multi("Socket", result_schema.sockets, state.sockets, f"{key}:sockets")
    age_days = _range_input("Listed (days ago)", result_schema.age_days_range, state.age_days, f"{key}:age_days")
    age_hours = _range_input("Listed (hours ago)", result_schema.age_hours_range, state.age_hours, f"{key}:age_hours")

    rank, rerolls = state.rank, state.rerolls
    module_names = state.module_names
    trigger_ranges = dict(state.trigger_ranges)
    attributes = state.attributes
    attribute_ranges = dict(state.attribute_ranges)
    neg_attributes = state.neg_attributes

    if mode is Mode.ANCESTOR:
        rank = _range_input("Required mastery rank", result_schema.rank_range, state.rank, f"{key}:rank")
        rerolls = _range_input("Rerolls", result_schema.reroll_range, state.rerolls, f"{key}:rerolls")
        module_names = _multi("Module", result_schema.module_names, state.module_names, f"{key}:modules")
        st.sidebar.markdown("**Attributes**")
        attributes = _multi("Must have", result_schema.attributes, state.attributes, f"{key}:attributes")
        attribute_ranges = {
            name: _range_input(
                f"{name} value",
                result_schema.attr_ranges.get(name, NumericRange()),
                state.attribute_ranges.get(name, NumericRange()),
                f"{key}:attr:{name}",
            )
            for name in attributes
        }
        neg_attributes = _multi("Exclude negative", result_schema.neg_attributes, state.neg_attributes, f"{key}:neg")
    else:
        st.sidebar.markdown("**Trigger values**")
        for name in result_schema.trigger_attributes:
            trigger_ranges[name] = _range_input(
                name,
                result_schema.trigger_ranges.get(name, NumericRange()),
                state.trigger_ranges.get(name, NumericRange()),
                f"{key}:trigger:{name}",
            )
        trigger_ranges = {name: r for name, r in trigger_ranges.items() if r.is_set}

    return state.replace(
        sort=sort,
        price=price,
        seller=seller,
        statuses=statuses,
        platforms=platforms,
        categories=categories,
        sockets=sockets,
        age_days=age_days,
        age_hours=age_hours,
        rank=rank,
        rerolls=rerolls,
        module_names=module_names,
        attributes=attributes,
        attribute_ranges=attribute_ranges,
        neg_attributes=neg_attributes,
        trigger_ranges=trigger_ranges,
    )


def profile_controls(session: ProfileSession, live_state: FacetState) -> None:
    store = session.store
    st.sidebar.markdown("**Profiles**")
    enabled = session.save_enabled(live_state)
    try:
        if session.selected:
            if st.sidebar.button(f"Save '{session.selected}'", disabled=not enabled):
                session.save(live_state)
                st.rerun()
            new_name = st.sidebar.text_input("Rename to", key="profile:rename")
            cols = st.sidebar.columns(3)
            if cols[0].button("Rename", disabled=not new_name.strip()):
                st.session_state["pending_profile"] = store.rename(session.selected, new_name)
                st.rerun()
            if cols[1].button("Delete"):
                store.delete(session.selected)
                st.session_state["pending_profile"] = None
                st.rerun()
            if cols[2].button("Default", disabled=store.default_name() == session.selected):
                store.set_default(session.selected)
                st.rerun()
        else:
            name = st.sidebar.text_input("New profile name", key="profile:new")
            if st.sidebar.button("Save as new profile", disabled=not enabled or not name.strip()):
                st.session_state["pending_profile"] = session.save(live_state, name)
                st.rerun()
    except ProfileError as exc:
        st.sidebar.error(f"{type(exc).__name__}: {exc}")


st.set_page_config(page_title="TFD Market Explorer", layout="wide")

st.title("TFD Market Explorer")
st.caption("Filter stored module listings from the TFD market.")

default_db = os.environ.get(ENV_DB_PATH, str(DEFAULT_DB_PATH))
selected_db = st.sidebar.text_input("Database path", value=default_db)

with db_session(Path(selected_db)) as conn:
    initialize_schema(conn)
    runs = list_search_runs(conn)

if not runs:
    st.info("The database does not contain any search runs yet. Run `python -m tfdmarket search` first.")
    st.stop()

run = st.sidebar.selectbox(
    "Search run",
    runs,
    format_func=lambda r: f"#{r.run_id} {r.module_type} '{r.module_name or '*'}' ({r.item_count} items, {r.started_at})",
)
if run.error:
    st.warning(f"Run #{run.run_id} ended with an error: {run.error}")

with db_session(Path(selected_db)) as conn:
    records = load_records(conn, run.run_id)

mode_choice = st.sidebar.radio("Mode", ["Auto", "Ancestor", "Trigger"], horizontal=True)
mode = detect_mode(records, None if mode_choice == "Auto" else Mode(mode_choice.lower()))

store = FilterProfileStore(SqliteKeyValueStore(Path(selected_db)), mode)

profile_names = store.names()
if st.session_state.get("profile_mode") != mode.value:
    st.session_state["profile_mode"] = mode.value
    default_name = store.default_name()
    st.session_state["profile"] = default_name if default_name in profile_names else None
if "pending_profile" in st.session_state:
    st.session_state["profile"] = st.session_state.pop("pending_profile")

selected_profile: Optional[str] = st.sidebar.selectbox(
    "Profile",
    [None, *profile_names],
    format_func=lambda n: "(none)" if n is None else n,
    key="profile",
)
session = ProfileSession(store, selected_profile)
base_state = session.saved_state() or FacetState()
seed = evaluate(records, FacetState(), mode)
live_state = facet_controls(base_state, seed.schema, mode, key=f"{mode.value}:{selected_profile or ''}")
profile_controls(session, live_state)

result = evaluate(records, live_state, mode)

metric_cols = st.columns(3)
metric_cols[0].metric("Matches", len(result))
metric_cols[1].metric("Collected", len(records))
metric_cols[2].metric("Mode", mode.value.title())

if not result.records:
    st.warning("No listings match the selected filters.")
    st.stop()

frame = _records_frame(result.records)

chart_cols = st.columns(2)
with chart_cols[0]:
    st.subheader("Price distribution")
    fig_price = px.histogram(frame.dropna(subset=["Price"]), x="Price", color="Status", nbins=30)
    st.plotly_chart(fig_price, use_container_width=True)

with chart_cols[1]:
    st.subheader("Price by module")
    top_names = frame["Name"].value_counts().head(15).index
    fig_names = px.box(frame[frame["Name"].isin(top_names)], x="Name", y="Price", points="all")
    fig_names.update_xaxes(tickangle=45)
    st.plotly_chart(fig_names, use_container_width=True)

st.subheader("Matching listings")
st.dataframe(frame, use_container_width=True)
