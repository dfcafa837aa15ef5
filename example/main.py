import asyncio

from content_understanding_server import ContentUnderstandingServer
from content_understanding_client.content_understanding_client import (
    ContentUnderstandingClient,
)
from content_understanding_client.errors import (
    ContentUnderstandingError,
    OperationFailedError,
)
from content_understanding_client.models import (
    ANALYZE_POLLING,
    CREATE_ANALYZER_POLLING,
    PollingConfig,
)

ANALYZER_TEMPLATE = {
    "description": "Sample invoice analyzer",
    "baseAnalyzerId": "prebuilt-documentAnalyzer",
    "config": {"returnDetails": True},
    "fieldSchema": {
        "fields": {
            "VendorName": {"type": "string", "method": "extract"},
            "Total": {"type": "number", "method": "extract"},
        }
    },
}


async def status_changed(status_response):
    print(f"Status changed to: {status_response.raw_status}")
    print(f"Elapsed time: {status_response.elapsed_time:.6f}s")


async def main():
    PORT = 8000
    server = ContentUnderstandingServer(
        status_sequence=["notStarted", "Running", "Running", "Succeeded"]
    )
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    async with ContentUnderstandingClient(
        f"http://localhost:{PORT}",
        api_version="2025-05-01-preview",
        subscription_key="local-key",
        on_status_change=status_changed,
    ) as client:
        try:
            created = await client.create_analyzer_and_wait(
                "invoice-sample",
                PollingConfig(
                    timeout_seconds=CREATE_ANALYZER_POLLING.timeout_seconds,
                    polling_interval_seconds=1.0,
                ),
                analyzer_template=ANALYZER_TEMPLATE,
            )
            print(f"Analyzer created: {created.result}")

            analyzed = await client.analyze_and_wait(
                "invoice-sample", "https://example.com/invoice.pdf", ANALYZE_POLLING
            )
            print(f"Result after {analyzed.attempts} polls: {analyzed.result}")

            await client.delete_analyzer("invoice-sample")
        except OperationFailedError as e:
            print(f"Operation failed: [{e.code}] {e.message}")
        except TimeoutError as e:
            print(f"Polling timed out: {e}")
        except ContentUnderstandingError as e:
            print(f"Error occurred: {e}")

    await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
