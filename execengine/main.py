from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException

from .config import EngineSettings, configure_logging
from .dispatcher import Dispatcher
from .errors import ValidationError
from .executor import evaluate
from .schemas import EnvironmentReport, ExecutionMode, ExecutionRequest, ExecutionResult, Verdict


def create_app(dispatcher: Optional[Dispatcher] = None) -> FastAPI:
    if dispatcher is None:
        load_dotenv('.env.local')
        load_dotenv('.env', override=True)
        settings = EngineSettings.from_env()
        configure_logging(settings.log_level)
        dispatcher = Dispatcher(settings)

    app = FastAPI(title='Code Execution Engine')
    app.state.dispatcher = dispatcher

    async def _verdict(req: ExecutionRequest, mode: ExecutionMode) -> Verdict:
        try:
            return await evaluate(req.model_copy(update={'mode': mode}), dispatcher)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail={'field': e.field, 'message': e.message})
        except Exception:
            raise HTTPException(status_code=500, detail='execution error')

    @app.post('/execute', response_model=ExecutionResult)
    async def execute_code(req: ExecutionRequest):
        try:
            return await dispatcher.execute(req)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail={'field': e.field, 'message': e.message})
        except Exception:
            raise HTTPException(status_code=500, detail='execution error')

    @app.post('/run', response_model=Verdict)
    async def run_samples(req: ExecutionRequest):
        return await _verdict(req, ExecutionMode.run)

    @app.post('/submit', response_model=Verdict)
    async def submit(req: ExecutionRequest):
        return await _verdict(req, ExecutionMode.submit)

    @app.get('/env/check', response_model=EnvironmentReport)
    async def env_check():
        return await dispatcher.check_toolchains()

    return app


app = create_app()
