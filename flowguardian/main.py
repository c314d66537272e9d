from datetime import datetime, timezone
from typing import Optional
import logging

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool

from flowguardian.broadcast import ConnectionManager
from flowguardian.config import get_settings
from flowguardian.exceptions import InputError
from flowguardian.pipeline import run_leak_analysis
from flowguardian.schemas import AnalyzeLeakResponse, PressurePayload, PressureResponse

logger = logging.getLogger(__name__)

app = FastAPI(title=get_settings().PROJECT_NAME)
app.state.viewers = ConnectionManager()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ----- Endpoints -----
@app.get("/")
def health_check():
    return {"status": "ok"}


@app.post("/api/analyze-leak", response_model=AnalyzeLeakResponse)
async def analyze_leak_image(request: Request,
                             image: UploadFile = File(...),
                             end1_pressure: Optional[float] = Form(None),
                             end2_pressure: Optional[float] = Form(None)):
    contents = await image.read()

    try:
        result = await run_in_threadpool(run_leak_analysis, contents, end1_pressure, end2_pressure)
    except InputError as e:
        logger.warning(f"Rejected leak analysis request: {e}")
        raise HTTPException(status_code=400, detail=str(e))

    date_time = _now()
    await request.app.state.viewers.broadcast({
        "type": "gemini",
        "editedImage": result.edited_image,
        "end1Pressure": end1_pressure,
        "end2Pressure": end2_pressure,
        "dateTime": date_time,
    })

    return AnalyzeLeakResponse(
        message="Analysis complete",
        edited_image=result.edited_image,
        leak_count=len(result.detections),
        end1_pressure=end1_pressure,
        end2_pressure=end2_pressure,
        date_time=date_time,
    )


@app.post("/api/pressure", response_model=PressureResponse)
async def receive_pressure(payload: PressurePayload, request: Request):
    pressure_diff = abs(payload.end1_pressure - payload.end2_pressure)
    await request.app.state.viewers.broadcast({
        "type": "pressure",
        "end1Pressure": payload.end1_pressure,
        "end2Pressure": payload.end2_pressure,
        "dateTime": _now(),
    })
    return PressureResponse(message="Pressure received", pressure_diff=pressure_diff)


@app.websocket("/ws")
async def viewer_socket(websocket: WebSocket):
    viewers: ConnectionManager = websocket.app.state.viewers
    await viewers.connect(websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        viewers.disconnect(websocket)
