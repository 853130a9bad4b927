from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse, PlainTextResponse
import itertools

API_KEY = "test-key"
PRICES = {
    "22": {"wa": {"cost": 30, "count": 12}, "tg": {"cost": 18.5, "count": 0}},
    "0": {"wa": {"cost": 45.2, "count": 3}, "fail": {"cost": 10, "count": 5}},
}
PAYMENTS = {
    "ref_ok": {"status": "success", "amount": 22500, "currency": "NGN"},
    "ref_small": {"status": "success", "amount": 10, "currency": "NGN"},
    "ref_failed": {"status": "failed", "amount": 22500, "currency": "NGN"},
    "ref_usd": {"status": "success", "amount": 22500, "currency": "USD"},
}


def create_mock_app() -> FastAPI:
    app = FastAPI(title="Mock SMS Provider and Payment Gateway", version="1.0.0")
    activation_ids = itertools.count(1000)
    polls = {}

    @app.get("/health")
    def health(): return {"status": "ok"}

    @app.get("/stubs/handler_api.php")
    def handler(api_key: str, action: str, service: str = "", country: str = "", id: str = Query("")):
        if api_key != API_KEY:
            return PlainTextResponse("BAD_KEY")
        if action == "getPrices":
            entry = PRICES.get(country, {}).get(service)
            return JSONResponse(content={country: {service: entry}} if entry else {})
        if action == "getNumber":
            if service == "fail" or not PRICES.get(country, {}).get(service):
                return PlainTextResponse("NO_NUMBERS")
            return PlainTextResponse(f"ACCESS_NUMBER:{next(activation_ids)}:2348012345678")
        if action == "getStatus":
            polls[id] = polls.get(id, 0) + 1
            return PlainTextResponse("STATUS_WAIT_CODE" if polls[id] == 1 else "STATUS_OK:482913")
        if action == "getCountries":
            return JSONResponse(content={"0": {"id": 0, "eng": "Russia"}, "22": {"id": 22, "eng": "India"}})
        if action == "getServicesList":
            return JSONResponse(content={"status": "success", "services": [{"code": "wa", "name": "Whatsapp"}]})
        return PlainTextResponse("WRONG_ACTION")

    @app.get("/transaction/verify/{reference}")
    def verify(reference: str):
        payment = PAYMENTS.get(reference)
        if payment is None:
            raise HTTPException(status_code=404, detail="Transaction reference not found")
        return {"status": True, "message": "Verification successful", "data": {"reference": reference, **payment}}

    return app


app = create_mock_app()
