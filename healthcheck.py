from aiohttp import web


async def healthcheck(request):
    engine = request.app["engine"]
    db_manager = request.app.get("db_manager")
    store_ok = await db_manager.ping() if db_manager else True
    return web.json_response(
        {
            "status": "ok" if store_ok else "degraded",
            "store": store_ok,
            "sweeper": engine.sweeper.stats(),
        },
        status=200 if store_ok else 503
    )


def create_app(engine, db_manager=None):
    app = web.Application()
    app["engine"] = engine
    app["db_manager"] = db_manager
    app.router.add_get('/health', healthcheck)
    return app
