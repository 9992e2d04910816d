"""LocalChat UI entrypoint."""
from __future__ import annotations

import argparse
import asyncio
import atexit
import logging
import os

import gradio as gr

from .catalog import ModelCatalog, load_catalog
from .config import RootConfig, apply_env, load_config
from .engines.airllm_engine import AirLLMEngineFactory
from .errors import LocalChatError
from .logging_setup import configure_logging
from .metrics.instrumentation import Instrumentation
from .metrics.monitors import system_snapshot
from .ui.state import AppState, metrics_markdown, status_markdown, transcript_to_chatbot

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="LocalChat UI")
    parser.add_argument("--config", default="configs/localchat.yaml")
    parser.add_argument("--catalog", help="YAML file with a models list (defaults to --config)")
    parser.add_argument("--host")
    parser.add_argument("--port", type=int)
    parser.add_argument("--title")
    parser.add_argument("--log-level")
    parser.add_argument("--gpu-index", type=int)
    parser.add_argument("--offline", action="store_true")
    parser.add_argument("--share", action="store_true")
    return parser.parse_args(argv)


def apply_overrides(cfg: RootConfig, args: argparse.Namespace) -> RootConfig:
    if args.title:
        cfg.app.title = args.title
    if args.host:
        cfg.app.host = args.host
    if args.port is not None:
        cfg.app.port = args.port
    if args.log_level:
        cfg.app.log_level = args.log_level
    if args.gpu_index is not None:
        cfg.engine.gpu_index = args.gpu_index
    if args.offline:
        cfg.app.offline_mode = True
    return cfg


def ensure_offline(cfg: RootConfig) -> None:
    if cfg.app.offline_mode:
        os.environ.setdefault("HF_HUB_OFFLINE", "1")
        os.environ.setdefault("TRANSFORMERS_OFFLINE", "1")


def _system_markdown(gpu_index: int | None) -> str:
    snap = system_snapshot(gpu_index)
    gpu = snap.gpu_name or "No CUDA device detected"
    lines = [
        f"**Memory:** {snap.ram_used_mb:.0f} MB / {snap.ram_total_mb:.0f} MB ({snap.ram_percent:.0f}%)",
        f"**CPU:** {snap.cpu_percent:.0f}%",
        f"**GPU:** {gpu}",
    ]
    if snap.vram_used_mb is not None:
        lines.append(f"**VRAM:** {snap.vram_used_mb:.0f} MB / {snap.vram_total_mb:.0f} MB")
    return "\n\n".join(lines)


def _error_markdown(state: AppState) -> str:
    return f"**Error:** {state.last_error}" if state.last_error else ""


def build_app(cfg: RootConfig, catalog: ModelCatalog) -> gr.Blocks:
    factory = AirLLMEngineFactory(cfg.engine, catalog.local_paths())
    state = AppState.create(
        catalog,
        factory,
        {
            "params": cfg.generation_defaults.to_params(),
            "system_prompt": cfg.generation_defaults.system_prompt,
        },
    )
    atexit.register(state.manager.close)
    instr = Instrumentation(cfg.app.progress_poll_ms, cfg.engine.gpu_index)
    poll_s = cfg.app.progress_poll_ms / 1000.0

    model_choices = [(f"{m.display_name} ({m.param_count_label}, {m.size_label})", m.id) for m in catalog.list()]
    default_model = model_choices[0][1] if model_choices else None

    def _status() -> str:
        manager = state.manager
        return status_markdown(manager.status, manager.progress, manager.model_id, state.last_label)

    with gr.Blocks(title=cfg.app.title) as demo:
        gr.Markdown(f"# {cfg.app.title}")

        with gr.Row():
            with gr.Column(scale=1):
                model_dd = gr.Dropdown(label="Model", choices=model_choices, value=default_model)
                model_info = gr.Markdown()
                load_btn = gr.Button("Load model")
                status_md = gr.Markdown(_status())
                reset_btn = gr.Button("Reset engine")
                with gr.Accordion("System monitor", open=False):
                    system_md = gr.Markdown()
                    system_btn = gr.Button("Refresh")
            with gr.Column(scale=3):
                chatbot = gr.Chatbot(label="Chat")
                error_md = gr.Markdown()
                user_input = gr.Textbox(label="Message", placeholder="Type your message...")
                with gr.Row():
                    send_btn = gr.Button("Send", variant="primary")
                    clear_btn = gr.Button("Clear chat")
                metrics_md = gr.Markdown(metrics_markdown(None))

        def _describe(model_id: str | None) -> str:
            if not model_id:
                return ""
            try:
                model = catalog.get(model_id)
            except KeyError:
                return ""
            tags = ", ".join(sorted(model.tags))
            return f"{model.description}\n\n*{tags}*" if tags else model.description

        async def _handle_load(model_id: str | None):
            state.clear_error()
            if not model_id:
                state.last_error = "No model selected"
                yield _status(), _error_markdown(state)
                return
            task = asyncio.create_task(state.manager.select_model(model_id))
            while not task.done():
                yield _status(), ""
                await asyncio.wait({task}, timeout=poll_s)
            try:
                task.result()
            except LocalChatError as exc:
                logger.warning("Load failed: %s", exc)
            yield _status(), _error_markdown(state)

        async def _handle_send(message: str):
            state.clear_error()
            orchestrator = state.orchestrator
            if not (message or "").strip():
                yield transcript_to_chatbot(orchestrator.transcript), "", message, metrics_markdown(state.last_metrics)
                return
            updates: asyncio.Queue = asyncio.Queue()
            unsubscribe = orchestrator.subscribe_transcript(updates.put_nowait)
            task = asyncio.create_task(instr.measure_send(orchestrator, message))
            try:
                while not (task.done() and updates.empty()):
                    getter = asyncio.ensure_future(updates.get())
                    await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
                    if getter.done():
                        snapshot = getter.result()
                        while not updates.empty():
                            snapshot = updates.get_nowait()
                        yield transcript_to_chatbot(snapshot), "", "", metrics_markdown(state.last_metrics)
                    else:
                        getter.cancel()
            finally:
                unsubscribe()
            try:
                state.last_metrics = task.result()
            except LocalChatError as exc:
                logger.warning("Send failed: %s", exc)
            yield (
                transcript_to_chatbot(orchestrator.transcript),
                _error_markdown(state),
                "",
                metrics_markdown(state.last_metrics),
            )

        def _handle_reset():
            state.manager.reset()
            state.clear_error()
            return [], _status(), ""

        def _handle_clear():
            state.orchestrator.clear()
            return [], ""

        model_dd.change(_describe, inputs=[model_dd], outputs=[model_info])
        load_btn.click(_handle_load, inputs=[model_dd], outputs=[status_md, error_md])
        send_outputs = [chatbot, error_md, user_input, metrics_md]
        send_btn.click(_handle_send, inputs=[user_input], outputs=send_outputs)
        user_input.submit(_handle_send, inputs=[user_input], outputs=send_outputs)
        reset_btn.click(_handle_reset, outputs=[chatbot, status_md, error_md])
        clear_btn.click(_handle_clear, outputs=[chatbot, error_md])
        system_btn.click(lambda: _system_markdown(cfg.engine.gpu_index), outputs=[system_md])
        demo.load(_describe, inputs=[model_dd], outputs=[model_info])

    return demo


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    cfg = apply_overrides(apply_env(load_config(args.config)), args)
    configure_logging(cfg.app.log_level)
    ensure_offline(cfg)

    if args.catalog:
        catalog = ModelCatalog(load_catalog(args.catalog))
    else:
        catalog = ModelCatalog(cfg.models)
    logger.info("Catalog has %d models", len(catalog.list()))

    app = build_app(cfg, catalog)
    app.queue(default_concurrency_limit=cfg.app.concurrency_limit)
    app.launch(server_name=cfg.app.host, server_port=cfg.app.port, share=args.share)


if __name__ == "__main__":
    main()
