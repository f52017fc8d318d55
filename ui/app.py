"""
Exam Session Engine - Streamlit UI
Candidate-facing host for single sections and full mock exams
"""

import streamlit as st
from pathlib import Path
import sys
import asyncio
from datetime import datetime

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config.settings import STORE_FILE, MOCK_CONFIG
from core.errors import ContentUnavailableError
from core.models import SectionStatus, StageOutcome
from engine.exam_engine import ExamEngine, SectionSession
from engine.mock_exam_engine import AUDIO_CHECK, RESULTS, MockOrchestrator
from engine.scoring import AnswerKeyScorer
from storage.json_storage import AttemptStorage, JsonContentProvider, JsonExamStatusStore, MockExamStorage
from storage.local_store import LocalStore


def get_current_mock_id(candidate_id: str) -> str:
    """Returns the mock ID for today."""
    return f"mock_{candidate_id}_{datetime.now().strftime('%Y_%m_%d')}"


def run_async(coro):
    return asyncio.run(coro)


# Page config
st.set_page_config(
    page_title="Exam Session Engine",
    page_icon="⏱",
    layout="wide",
    initial_sidebar_state="expanded"
)

st.markdown("""
<style>
    .question-box {
        background: #f8f9fa;
        padding: 1rem 1.5rem;
        border-radius: 0.5rem;
        border-left: 4px solid #1f77b4;
        margin: 0.5rem 0;
    }
</style>
""", unsafe_allow_html=True)


def init_session_state():
    """Initialize session state variables"""
    if 'store' not in st.session_state:
        st.session_state.store = LocalStore(STORE_FILE)

    if 'content' not in st.session_state:
        st.session_state.content = JsonContentProvider()

    if 'attempts' not in st.session_state:
        st.session_state.attempts = AttemptStorage()

    if 'engine' not in st.session_state:
        attempts = st.session_state.attempts
        st.session_state.engine = ExamEngine(
            st.session_state.content,
            st.session_state.store,
            scorer_factory=lambda candidate_id, content: AnswerKeyScorer(content, candidate_id, attempts),
            attempts=attempts,
        )

    if 'current_page' not in st.session_state:
        st.session_state.current_page = 'home'

    if 'candidate_id' not in st.session_state:
        st.session_state.candidate_id = None

    if 'section' not in st.session_state:
        st.session_state.section = None

    if 'orchestrator' not in st.session_state:
        st.session_state.orchestrator = None

    if 'mock_sections' not in st.session_state:
        st.session_state.mock_sections = {}

    if 'mock_sections_open' not in st.session_state:
        st.session_state.mock_sections_open = {}


def render_sidebar():
    """Render navigation sidebar"""
    st.sidebar.markdown("## ⏱ Exam Sessions")
    st.sidebar.markdown("---")

    # 🔒 Lock sidebar during a mock
    if st.session_state.current_page == 'mock':
        st.sidebar.info("📝 Mock Exam in Progress")
        st.sidebar.markdown("Navigation locked")
        return

    if st.sidebar.button("🏠 Home", use_container_width=True):
        close_section()
        st.session_state.current_page = 'home'
        st.rerun()

    if st.session_state.candidate_id:
        st.sidebar.caption(f"Candidate: {st.session_state.candidate_id}")


def close_section():
    session = st.session_state.section
    if session is not None:
        session.close()
    st.session_state.section = None


def render_home():
    """Render home page"""
    st.header("⏱ Timed Exam Sessions")

    candidate_id = st.text_input("Candidate ID", value=st.session_state.candidate_id or "")
    if candidate_id:
        st.session_state.candidate_id = candidate_id.strip()

    sections = st.session_state.content.list_sections()
    if not sections:
        st.warning("No section content found. Add JSON files to data/content/.")
        return

    st.markdown("---")
    st.subheader("📝 Practice a Section")

    section_id = st.selectbox("Section", sections)

    col1, col2 = st.columns(2)
    with col1:
        if st.button("🚀 Open Section", type="primary", disabled=not st.session_state.candidate_id):
            open_practice_section(section_id)
    with col2:
        if st.button("🔍 Review Last Attempt", disabled=not st.session_state.candidate_id):
            open_review(section_id)

    st.markdown("---")
    st.subheader("🎯 Full Mock Test")

    available = [s for s in MOCK_CONFIG.sections if s in sections]
    st.caption(" → ".join(available) if available else "Mock sections are missing content")

    if st.button("🎯 Enter Mock Exam", disabled=not (st.session_state.candidate_id and available)):
        st.session_state.mock_sections = {s: s for s in available}
        st.session_state.orchestrator = None
        st.session_state.mock_sections_open = {}
        st.session_state.current_page = 'mock'
        st.rerun()


def open_practice_section(section_id: str):
    try:
        session = run_async(st.session_state.engine.open_section(section_id, st.session_state.candidate_id))
    except ContentUnavailableError as e:
        st.error(f"❌ {e}")
        return

    st.session_state.section = session
    st.session_state.current_page = 'section'
    st.rerun()


def open_review(section_id: str):
    try:
        session = run_async(st.session_state.engine.open_review(section_id, st.session_state.candidate_id))
    except ContentUnavailableError as e:
        st.error(f"❌ {e}")
        return

    if session is None:
        st.info("No submitted attempt to review yet.")
        return

    st.session_state.section = session
    st.session_state.current_page = 'section'
    st.rerun()


def render_timer(session: SectionSession):
    time_left = session.display_seconds
    t_mins = time_left // 60
    t_secs = time_left % 60
    label = f"{t_mins:02d}:{t_secs:02d}"

    if session.status == SectionStatus.PAUSED:
        st.info(f"⏸ Paused: {label}")
    elif not session.is_running:
        st.info(f"⏱ {label}")
    elif time_left <= 300:
        st.error(f"⏰ LAST 5 MINUTES: {label}")
    elif time_left <= 900:
        st.warning(f"⏱ Time Left: {label}")
    else:
        st.info(f"⏱ Time Left: {label}")


def render_section(session: SectionSession):
    """Render one timed section"""
    session.tick()
    if session.expiry_pending:
        outcome = run_async(session.drain_pending())
        if outcome is not None and not outcome.ok and outcome.error:
            st.error(f"❌ Submission failed: {outcome.error}")

    # Reruns stand in for the periodic flush of running()
    session.flush_if_due()

    content = session.content
    st.header(f"📝 {content.title if content else session.section_id}")

    col1, col2, col3 = st.columns([2, 1, 1])
    with col1:
        render_timer(session)
    with col2:
        total = content.total_questions if content else 0
        st.markdown(f"### ✅ {session.ledger.answered_count}/{total}")
    with col3:
        st.markdown(f"### {session.status.value.title()}")

    if session.restored and session.status == SectionStatus.PAUSED:
        st.info("💾 Your saved progress was restored. Press Resume to continue the clock.")

    if session.last_error:
        st.error(f"❌ Submission failed: {session.last_error}. You can submit again.")

    render_section_controls(session)
    st.markdown("---")

    if content:
        read_only = session.status in (SectionStatus.REVIEWING, SectionStatus.COMPLETED)
        for question in content.questions:
            render_question(session, question, read_only)

    if session.status == SectionStatus.COMPLETED and session.result:
        result = session.result
        st.success(
            f"✅ Submitted: {result.correct_count}/{result.total_count} correct "
            f"in {result.time_taken_seconds:.0f}s"
        )


def render_section_controls(session: SectionSession):
    status = session.status
    col1, col2, col3, col4 = st.columns(4)

    with col1:
        if status == SectionStatus.TAKING and not session.clock.started:
            if st.button("▶️ Start"):
                session.start()
                st.rerun()
        elif status == SectionStatus.TAKING:
            if st.button("⏸ Pause"):
                session.pause()
                st.rerun()
        elif status == SectionStatus.PAUSED:
            if st.button("▶️ Resume", type="primary"):
                session.resume()
                st.rerun()

    with col2:
        if status in (SectionStatus.TAKING, SectionStatus.PAUSED):
            if st.button("📤 Finish", type="primary", disabled=session.in_flight):
                outcome = run_async(session.finish())
                if not outcome.ok and outcome.error:
                    st.error(f"❌ {outcome.error}")
                st.rerun()

    with col3:
        if status in (SectionStatus.REVIEWING, SectionStatus.COMPLETED) and not session.is_orchestrated:
            if st.button("🔁 Retake"):
                session.retake()
                st.rerun()

    with col4:
        if st.button("🔄 Refresh"):
            st.rerun()


def render_question(session: SectionSession, question, read_only: bool):
    key = question.key
    current = session.answers.get(key)

    st.markdown(f"""
        <div class="question-box">
            <strong>Q{key}.</strong> {question.prompt}
        </div>
    """, unsafe_allow_html=True)

    widget_key = f"{session.section_id}_{session.attempt_id}_q_{key}"

    def save_answer():
        picked = st.session_state[widget_key]
        if picked is None or picked == "":
            session.clear_answer(key)
        else:
            session.set_answer(key, picked)

    if question.options:
        st.radio(
            "Select your answer:",
            options=question.options,
            index=question.options.index(current) if current in question.options else None,
            key=widget_key,
            on_change=save_answer,
            disabled=read_only,
        )
    else:
        st.text_input(
            "Your answer",
            value=current if isinstance(current, str) else "",
            key=widget_key,
            on_change=save_answer,
            disabled=read_only,
        )

    bookmark_key = f"{widget_key}_bookmark"

    def toggle_bookmark():
        session.toggle_bookmark(key)

    st.checkbox(
        "🔖 Bookmark",
        value=session.ledger.is_bookmarked(key),
        key=bookmark_key,
        on_change=toggle_bookmark,
        disabled=read_only,
    )


def get_orchestrator() -> MockOrchestrator:
    orchestrator = st.session_state.orchestrator
    if orchestrator is None:
        candidate_id = st.session_state.candidate_id
        orchestrator = MockOrchestrator(
            get_current_mock_id(candidate_id),
            st.session_state.mock_sections,
            store=st.session_state.store,
            candidate_id=candidate_id,
            status_collaborator=JsonExamStatusStore(),
            archive=MockExamStorage(),
        )
        run_async(orchestrator.mount())
        st.session_state.orchestrator = orchestrator
    return orchestrator


def render_mock():
    """Render the multi-section mock flow"""
    orchestrator = get_orchestrator()
    run_async(orchestrator.poll())

    stage = orchestrator.current_stage

    if stage == AUDIO_CHECK:
        render_audio_check(orchestrator)
    elif stage == RESULTS:
        render_mock_results(orchestrator)
    else:
        render_mock_section(orchestrator)


def render_audio_check(orchestrator: MockOrchestrator):
    st.header("🔊 Audio Check")
    st.markdown(f"""
    **This mock has {len(orchestrator.section_stages)} sections:** {' → '.join(orchestrator.section_stages)}

    - ⏱ Each section is timed separately
    - 💾 Progress is saved automatically; a reload pauses the clock
    - 🚪 Exiting early submits the current section and skips the rest
    """)

    if st.button("✅ I can hear the audio, Start", type="primary"):
        run_async(orchestrator.complete_audio_check())
        st.rerun()

    if st.button("⬅️ Back to Home"):
        st.session_state.current_page = 'home'
        st.rerun()


def render_mock_section(orchestrator: MockOrchestrator):
    stage, section_id = orchestrator.active_section()
    sessions = st.session_state.mock_sections_open
    session = sessions.get(stage)

    if session is None:
        try:
            session = run_async(st.session_state.engine.open_section(
                section_id,
                st.session_state.candidate_id,
                mock_id=orchestrator.mock_id,
                stage=stage,
                duration_seconds=MOCK_CONFIG.durations.get(stage),
            ))
        except ContentUnavailableError as e:
            st.error(f"❌ {e}")
            if st.button("🔄 Retry"):
                st.rerun()
            return
        sessions[stage] = session

    index = orchestrator.section_stages.index(stage) + 1
    st.caption(f"Section {index} of {len(orchestrator.section_stages)}")

    render_section(session)

    if session.status == SectionStatus.COMPLETED:
        if run_async(orchestrator.poll()):
            session.close()
            st.rerun()
        return

    st.markdown("---")
    if st.button("🚪 Exit Exam"):
        st.session_state['confirm_exit'] = True

    if st.session_state.get('confirm_exit'):
        st.error("Exiting submits this section as it is and skips all remaining sections.")
        c1, c2 = st.columns(2)
        with c1:
            if st.button("✅ Yes, Exit Now", type="primary"):
                st.session_state['confirm_exit'] = False
                run_async(orchestrator.request_early_exit())
                session.tick()
                run_async(session.drain_pending())
                run_async(orchestrator.poll())
                st.rerun()
        with c2:
            if st.button("❌ No, Continue Exam"):
                st.session_state['confirm_exit'] = False
                st.rerun()


def render_mock_results(orchestrator: MockOrchestrator):
    st.header("📊 Mock Test Results")

    if orchestrator.early_exit_requested:
        st.warning("The exam was ended early. Skipped sections have no result.")

    for stage in orchestrator.section_stages:
        result = orchestrator.stage_results[stage]
        outcome = orchestrator.stage_outcomes[stage]

        if result:
            st.metric(stage.title(), f"{result.get('correctCount', 0)}/{result.get('totalCount', 0)}")
        elif outcome == StageOutcome.SKIPPED:
            st.metric(stage.title(), "Skipped")
        else:
            st.metric(stage.title(), "-")

    if st.button("🏠 Go Home"):
        st.session_state.orchestrator = None
        st.session_state.mock_sections_open = {}
        st.session_state.current_page = 'home'
        st.rerun()


def main():
    init_session_state()
    render_sidebar()

    page = st.session_state.current_page

    if page == 'home':
        render_home()
    elif page == 'section' and st.session_state.section is not None:
        render_section(st.session_state.section)
    elif page == 'mock':
        render_mock()
    else:
        render_home()


if __name__ == "__main__":
    main()
