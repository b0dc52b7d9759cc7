import sys
import asyncio
import argparse
from typing import Optional
from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import Response
from additions.packed import (
    init_packed_archive,
    get_packed_file,
    get_header_blob,
    list_files,
    list_folders,
    is_initialized as packed_is_initialized,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="wad-server", description="Serve the contents of a WAD archive over HTTP.")
    parser.add_argument("--host", type=str, default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--packed", type=str, required=True,
                        help="WAD archive to serve. Can be a local file path or URL. "
                             "If URL, downloads to local file if not present.")
    return parser


app = FastAPI()


@app.get("/files")
async def read_listing(folder: Optional[str] = None):
    if not packed_is_initialized():
        raise HTTPException(status_code=503, detail="Archive not loaded")
    return {"folders": list_folders(), "files": list_files(folder)}


@app.get("/files/{path:path}")
async def read_packed_file(request: Request, path: str):
    if response := await get_packed_file(path, request):
        return response
    raise HTTPException(status_code=404, detail="File not found")


@app.get("/header")
async def read_header():
    header = get_header_blob()
    if header is None:
        raise HTTPException(status_code=404, detail="Archive has no header")
    return Response(header, media_type="application/xml")


def start_server(source: str, host: str = "0.0.0.0", port: int = 8000):
    import uvicorn

    if asyncio.run(init_packed_archive(source)) is None:
        print(f"Error: Failed to initialize packed archive from: {source}")
        sys.exit(1)

    uvicorn.run(app, host=host, port=port)


def main(argv=None):
    args = build_parser().parse_args(argv)
    print(f"Starting server on http://localhost:{args.port}")
    print(f"packed: {args.packed}")
    start_server(args.packed, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
