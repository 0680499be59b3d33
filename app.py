"""
SupportDesk — Main entry point.

Responsibilities:
  - Build the Gradio UI layout (chat panel, knowledge base sidebar, settings)
  - Wire up callbacks to the assistant built in core/assistant.py
  - Stream answers fragment by fragment and list the cited sources
  - Launch the app on localhost only

Run:
  python app.py
"""

import logging
import os
import uuid

import gradio as gr

from core import ingestion
from core.assistant import Assistant, build_assistant
from core.errors import AssistantError
from core.models import ChatMessage, Query, QueryConfig, Response, Role
from utils.config import (
    DEFAULT_MAX_RETRIEVED_CHUNKS,
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _history_to_messages(history: list[dict]) -> list[ChatMessage]:
    """Convert Gradio 'messages' history into chat turns."""
    turns = []
    for msg in history or []:
        role = msg.get("role")
        content = msg.get("content")
        if role in (Role.USER.value, Role.ASSISTANT.value) and isinstance(content, str) and content.strip():
            turns.append(ChatMessage(Role(role), content))
    return turns


def _sources_markdown(response: Response) -> str:
    """Format the sources and generation details of a response as Markdown."""
    if not response.success:
        return ""
    lines = []
    if response.sources:
        lines.append("**Sources:**")
        for i, source in enumerate(response.sources, 1):
            label = f"[{source.title}]({source.url})" if source.url else source.title
            lines.append(f"{i}. {label} (relevance: {source.score * 100:.0f}%)")
    meta = response.metadata
    lines.append(
        f"\n*Model: {meta.model_name} on {meta.provider or 'n/a'} | "
        f"Retrieval: {meta.retrieval_mode.value} | "
        f"Tokens: {meta.token_count} | Time: {meta.generation_time:.1f}s | "
        f"Confidence: {response.confidence:.2f}*"
    )
    return "\n".join(lines)


def _failure_text(error: Exception) -> str:
    """What the user sees when adding knowledge fails. Details go to the log only."""
    logger.warning("Knowledge base update failed: %s", error)
    if isinstance(error, AssistantError):
        return error.user_message
    return "The file could not be read."


def _status_markdown(assistant: Assistant) -> str:
    engine = assistant.engine
    if engine.is_ready:
        model = f"✅ {engine.model_name} ({engine.active_provider.value.upper()})"
    else:
        model = "⚠️ No language model loaded"
    index = "vector" if assistant.store.vector_index_ready else "keyword"
    return f"{model} | Knowledge base: {assistant.store.count()} chunks, {index} search"


# ---------------------------------------------------------------------------
# Build the Gradio app
# ---------------------------------------------------------------------------

def build_app(assistant: Assistant) -> gr.Blocks:
    with gr.Blocks(
        title="SupportDesk — Local Support Assistant",
        theme=gr.themes.Soft(),
        css="footer { display: none !important; }",
    ) as demo:

        # ── Hidden state ──────────────────────────────────────
        conversation_id = gr.State(lambda: uuid.uuid4().hex)

        # ── Header ────────────────────────────────────────────
        gr.Markdown("# 🛠️ SupportDesk — Local Support Assistant")
        status_md = gr.Markdown(_status_markdown(assistant))

        with gr.Row():

            # ============  LEFT SIDEBAR  ============
            with gr.Column(scale=1, min_width=280):

                gr.Markdown("### ⚙️ Settings")
                enable_rag = gr.Checkbox(label="Use knowledge base", value=True)
                max_chunks = gr.Slider(0, 10, value=DEFAULT_MAX_RETRIEVED_CHUNKS, step=1,
                                       label="Sources to retrieve")
                max_tokens = gr.Slider(0, 2048, value=DEFAULT_MAX_TOKENS, step=16, label="Max new tokens")
                temperature = gr.Slider(0.0, 1.0, value=DEFAULT_TEMPERATURE, step=0.05,
                                        label="Temperature (0 = deterministic)")

                gr.Markdown("---")

                gr.Markdown("### 📁 Knowledge base")
                file_upload = gr.File(
                    label="Add files (PDF, PPTX, TXT, MD)",
                    file_count="multiple",
                    file_types=[".pdf", ".pptx", ".txt", ".md"],
                )
                article_title = gr.Textbox(label="Article title", placeholder="Optional")
                article_text = gr.Textbox(label="Or paste an article", lines=4)
                add_text_btn = gr.Button("Add article", size="sm")

            # ============  RIGHT MAIN PANEL  ============
            with gr.Column(scale=3):
                chatbot = gr.Chatbot(label="Chat", height=480, type="messages")
                with gr.Row():
                    user_input = gr.Textbox(
                        label="Describe your problem",
                        placeholder="My Wi-Fi keeps disconnecting...",
                        scale=5,
                    )
                    send_btn = gr.Button("Send", variant="primary", scale=1)
                sources_md = gr.Markdown()

        # ==================================================================
        # CALLBACKS
        # ==================================================================

        # ── Chat (streaming) ──────────────────────────────────
        def on_chat(conv_id, message, history, use_rag, chunks, tokens, temp):
            history = history or []
            if not message or not message.strip():
                yield history, "", gr.update()
                return

            query = Query(
                text=message.strip(),
                history=_history_to_messages(history),
                config=QueryConfig(
                    max_tokens=int(tokens),
                    temperature=float(temp),
                    enable_rag=bool(use_rag),
                    max_retrieved_chunks=int(chunks),
                ),
            )
            history = history + [
                {"role": "user", "content": message.strip()},
                {"role": "assistant", "content": ""},
            ]
            yield history, "", ""

            text = ""
            # Gradio closes this generator when the user leaves or stops.
            with assistant.orchestrator.stream(query, conversation_id=conv_id) as stream:
                for fragment in stream:
                    text += fragment
                    history[-1] = {"role": "assistant", "content": text}
                    yield history, "", gr.update()

            response = stream.response
            if response.success:
                history[-1] = {"role": "assistant", "content": response.text or text}
            elif text and response.error_message:
                history[-1] = {"role": "assistant", "content": f"{text}\n\n⚠️ {response.error_message}"}
            yield history, "", _sources_markdown(response)

        chat_inputs = [conversation_id, user_input, chatbot, enable_rag, max_chunks, max_tokens, temperature]
        send_btn.click(on_chat, inputs=chat_inputs, outputs=[chatbot, user_input, sources_md])
        user_input.submit(on_chat, inputs=chat_inputs, outputs=[chatbot, user_input, sources_md])

        # ── File upload (ingestion) ───────────────────────────
        def on_file_upload(files):
            if not files:
                return gr.update()
            results = []
            for f in files:
                file_path = f.name if hasattr(f, "name") else str(f)
                try:
                    res = ingestion.ingest_file(assistant.store, file_path)
                    results.append(f"✅ {res['source']} — {res['chunks']} chunks")
                except (AssistantError, OSError) as e:
                    results.append(f"❌ {os.path.basename(file_path)}: {_failure_text(e)}")
            gr.Info("\n".join(results))
            return _status_markdown(assistant)

        file_upload.change(on_file_upload, inputs=[file_upload], outputs=[status_md])

        # ── Pasted article ────────────────────────────────────
        def on_add_text(title, text):
            if not text or not text.strip():
                gr.Warning("Please paste some text first.")
                return gr.update(), title, text
            try:
                ids = ingestion.ingest_text(assistant.store, text, title=title or None)
                gr.Info(f"✅ Added {len(ids)} chunk(s)")
                return _status_markdown(assistant), "", ""
            except AssistantError as e:
                gr.Warning(f"❌ {_failure_text(e)}")
                return gr.update(), title, text

        add_text_btn.click(
            on_add_text,
            inputs=[article_title, article_text],
            outputs=[status_md, article_title, article_text],
        )

    return demo


# ---------------------------------------------------------------------------
# Launch
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    assistant = build_assistant()
    try:
        build_app(assistant).queue().launch(server_name="127.0.0.1")
    finally:
        assistant.close()
