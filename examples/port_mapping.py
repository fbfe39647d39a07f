"""
Example: map a port, keep it alive, and release it on exit.
"""
import asyncio
import sys

from natpmp_client import Client, NATPMPError


async def main(gateway: str):
    """Map TCP port 8080 and hold it until interrupted."""
    async with Client(gateway) as client:
        try:
            address = await client.get_external_ip()
            mapping = await client.map_port("tcp", 8080, public_port=8080, lifetime=3600)
        except NATPMPError as e:
            print(f"Gateway refused: {e}")
            return

        print(f"Reachable at {address}:{mapping.public_port} for {mapping.lifetime}s")
        print("Renewals run in the background. Press Ctrl+C to release.")

        try:
            while True:
                await asyncio.sleep(1)
        finally:
            await client.unmap_port("tcp", 8080)
            print("Mapping released")


if __name__ == "__main__":
    try:
        asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else "192.168.1.1"))
    except KeyboardInterrupt:
        pass
