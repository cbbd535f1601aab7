import os

from dotenv import load_dotenv
from motor.motor_asyncio import AsyncIOMotorClient
from sanic import Sanic, response

load_dotenv()

app = Sanic("relaymail_logs")


@app.listener("before_server_start")
async def init(app, loop):
    app.ctx.db = AsyncIOMotorClient(os.getenv("CONNECTION_URI")).relaymail
    app.ctx.attachment_dir = os.path.abspath(os.getenv("ATTACHMENT_DIR", "attachments"))


@app.get("/")
async def index(request):
    return response.text("Welcome! This simple website is used to display your modmail logs.")


@app.get("/logs/<filename>")
async def get_log_file(request, filename):
    """Returns the plain text transcript of a closed thread"""

    log = await app.ctx.db.logs.find_one({"filename": filename})
    if log is None:
        return response.text("Not Found", status=404)
    return response.text(log["content"])


@app.get("/attachments/<attachment_id:int>/<filename>")
async def get_attachment(request, attachment_id, filename):
    path = os.path.join(app.ctx.attachment_dir, str(attachment_id))
    if not os.path.isfile(path):
        return response.text("Not Found", status=404)
    return await response.file(path, filename=filename)


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
