import argparse
import asyncio
import json
import sys

from dotenv import load_dotenv
from loguru import logger

from llm_gateway.app_config import load_json_config, parse_gateway_config, resolve_runtime_env
from llm_gateway.bootstrap import bootstrap_runtime
from llm_gateway.errors import GatewayError
from llm_gateway.models import Message


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="llm-gateway", description="Run one chat turn through the gateway.")
    parser.add_argument("prompt", help="user message")
    parser.add_argument("--model", help="configured model id (defaults to DefaultModel)")
    parser.add_argument("--config", help="path to config.json (defaults to ./config.json)")
    parser.add_argument("--no-stream", action="store_true", help="print the final result as JSON")
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    load_dotenv()

    config = parse_gateway_config(load_json_config(args.config))
    runtime = bootstrap_runtime(config, resolve_runtime_env(config))
    for description in runtime.log_descriptions:
        logger.debug(f"Logging to {description}")

    try:
        request = runtime.build_request([Message.user(args.prompt)], model_id=args.model, stream=not args.no_stream)
    except GatewayError as ex:
        logger.error(ex.message)
        await runtime.aclose()
        return 2

    try:
        if args.no_stream:
            result = await runtime.orchestrator.complete(request)
            print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
            return 0 if result.status == "done" else 1

        status = 0
        async for event in runtime.orchestrator.stream(request):
            sys.stdout.write(event.to_sse())
            sys.stdout.flush()
            if event.type == "error":
                status = 1
        return status
    finally:
        await runtime.aclose()


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    run()
