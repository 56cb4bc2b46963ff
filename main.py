from hybrid_llm.config import get_settings
from hybrid_llm.core.types import InvokeRequest
from hybrid_llm.dependencies import build_client


async def main():
    client = build_client(get_settings())

    # Check which provider will serve the request
    availability = await client.availability()
    print(f"Local model availability: {availability.value}")

    try:
        response = await client.invoke(InvokeRequest(prompt="Hello, how are you?"))
        print(f"[{response.provider.value}] {response.content}")
        if response.metadata.fallback_reason:
            print(f"Fell back to remote: {response.metadata.fallback_reason}")
    finally:
        await client.aclose()

if __name__ == "__main__":
    import asyncio
    asyncio.run(main())
