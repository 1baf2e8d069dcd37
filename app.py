import os
import io
import logging
import secrets
from functools import wraps

from flask import Flask, request, jsonify, send_file
from flask_login import (
    LoginManager, login_user, logout_user,
    login_required, current_user
)
from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas
from sqlalchemy import func, select

from actors import Role, actor_for, resolve_role
from database import (
    db,
    now_utc, money,
    setting_get, setting_set,
    OrderStatus, PaymentStatus,
    User, AuditLog, Order
)
from errors import OrderingError, ValidationError
from fulfillment import ACTIVE_STATUSES
from orders import OrderRepository, OrderService
from payments import PaymentRecorder
from pricing import pricing_engine_from_config
from schemas import order_request_from_payload, payment_request_from_payload


BASE_DIR = os.path.abspath(os.path.dirname(__file__))
DB_PATH = os.path.join(BASE_DIR, "restaurant.db")


app = Flask(__name__)

app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", secrets.token_hex(32))
app.config["SQLALCHEMY_DATABASE_URI"] = os.environ.get("DATABASE_URL", f"sqlite:///{DB_PATH}")
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

app.config["TAX_RATE"] = os.environ.get("TAX_RATE", "0")
app.config["DELIVERY_FEE"] = os.environ.get("DELIVERY_FEE", "5.00")
app.config["FREE_DELIVERY_THRESHOLD"] = os.environ.get("FREE_DELIVERY_THRESHOLD") or None
app.config["ORDER_NUMBER_ATTEMPTS"] = int(os.environ.get("ORDER_NUMBER_ATTEMPTS", "3"))
app.config["TRANSITION_ATTEMPTS"] = int(os.environ.get("TRANSITION_ATTEMPTS", "3"))
app.config["ORDER_LIST_LIMIT"] = int(os.environ.get("ORDER_LIST_LIMIT", "100"))

db.init_app(app)

login_manager = LoginManager(app)
login_manager.login_view = "api_login"


def json_error(message, code=400, kind=None):
    body = {"success": False, "error": message}
    if kind:
        body["kind"] = kind
    return jsonify(body), code


def require_json():
    if not request.is_json:
        return json_error("Expected JSON body", 400, "validation_error")
    return None


def current_actor():
    return actor_for(current_user)


def require_roles(*roles):
    allowed = {Role(r) for r in roles}

    def deco(fn):
        @wraps(fn)
        @login_required
        def wrapper(*args, **kwargs):
            cur = resolve_role(getattr(current_user, "role", ""))
            if cur != Role.ADMIN and cur not in allowed:
                return json_error("Forbidden: insufficient role", 403, "forbidden")
            return fn(*args, **kwargs)
        return wrapper
    return deco


def order_repository():
    return OrderRepository(
        max_number_attempts=app.config["ORDER_NUMBER_ATTEMPTS"],
        max_transition_attempts=app.config["TRANSITION_ATTEMPTS"]
    )


def order_service():
    return OrderService(
        repository=order_repository(),
        pricing=pricing_engine_from_config(app.config),
        list_limit=app.config["ORDER_LIST_LIMIT"]
    )


def payment_recorder():
    return PaymentRecorder(order_repository())


@login_manager.user_loader
def load_user(user_id):
    try:
        return db.session.get(User, int(user_id))
    except (TypeError, ValueError):
        return None


@login_manager.unauthorized_handler
def _unauthorized():
    return json_error("Authentication required", 401, "unauthorized")


@app.errorhandler(OrderingError)
def _err_ordering(e):
    if e.status_code >= 500:
        app.logger.warning("%s %s failed: %s (%s)", request.method, request.path, e.message, e.kind)
    return jsonify(e.to_dict()), e.status_code


@app.errorhandler(404)
def _err_404(_e):
    return json_error("Not found", 404, "not_found")


@app.errorhandler(405)
def _err_405(_e):
    return json_error("Method not allowed", 405, "method_not_allowed")


def audit(action, entity, entity_id=None, details=None):
    uid = int(current_user.id) if getattr(current_user, "is_authenticated", False) else None

    log = AuditLog(
        user_id=uid,
        action=action,
        entity=entity,
        entity_id=entity_id,
        ip=request.headers.get("X-Forwarded-For", request.remote_addr),
        details_json=(details or {}),
        created_at=now_utc()
    )
    db.session.add(log)
    db.session.commit()


def order_summary(o: Order):
    return {
        "order_id": o.id,
        "order_number": o.order_number,
        "subtotal": str(money(o.subtotal)),
        "tax_amount": str(money(o.tax_amount)),
        "delivery_fee": str(money(o.delivery_fee)),
        "total": str(money(o.total_amount)),
        "status": o.status
    }


@app.route("/api/system/init", methods=["POST"])
def api_system_init():
    db.create_all()

    if not setting_get("restaurant_name"):
        setting_set("restaurant_name", "My Restaurant")

    if User.query.count() == 0:
        admin = User(name="Admin", email="admin@local", role="Admin", phone="")
        admin.set_password("admin12345")
        db.session.add(admin)
        db.session.commit()
        audit("seed", "user", admin.id, {"note": "Default admin created"})
        return jsonify({"success": True, "message": "Initialized. Default admin: admin@local / admin12345"})

    return jsonify({"success": True, "message": "Already initialized"})


@app.route("/api/auth/login", methods=["POST"])
def api_login():
    bad = require_json()
    if bad:
        return bad
    data = request.get_json()
    email = (data.get("email") or "").strip().lower()
    pw = data.get("password") or ""
    user = User.query.filter_by(email=email).first()
    if not user or not user.is_active or not user.check_password(pw):
        return json_error("Invalid credentials", 401, "unauthorized")

    login_user(user)
    audit("login", "user", user.id)

    return jsonify({
        "success": True,
        "user": {"id": user.id, "name": user.name, "email": user.email, "role": user.role}
    })


@app.route("/api/auth/logout", methods=["POST"])
@login_required
def api_logout():
    audit("logout", "user", current_user.id)
    logout_user()
    return jsonify({"success": True})


@app.route("/api/auth/me", methods=["GET"])
@login_required
def api_me():
    return jsonify({
        "success": True,
        "user": {
            "id": current_user.id,
            "name": current_user.name,
            "email": current_user.email,
            "phone": current_user.phone,
            "role": current_user.role,
            "access": current_actor().role.value
        }
    })


@app.route("/api/orders", methods=["POST"])
@login_required
def api_orders_create():
    bad = require_json()
    if bad:
        return bad

    req, errors = order_request_from_payload(request.get_json(silent=True))
    if errors:
        raise ValidationError(errors=errors)

    o = order_service().create_order(current_actor(), req)
    audit("create", "order", o.id, {"order_number": o.order_number, "total": str(money(o.total_amount))})

    body = {"success": True}
    body.update(order_summary(o))
    body["order"] = o.to_dict()
    return jsonify(body), 201


@app.route("/api/orders", methods=["GET"])
@login_required
def api_orders_list():
    limit = request.args.get("limit", type=int) or app.config["ORDER_LIST_LIMIT"]
    limit = max(1, min(limit, app.config["ORDER_LIST_LIMIT"]))

    rows = order_service().list_orders(
        current_actor(),
        status=request.args.get("status") or None,
        order_type=request.args.get("order_type") or None,
        limit=limit
    )
    return jsonify({"success": True, "orders": [o.to_dict(include_lines=False) for o in rows]})


@app.route("/api/orders/<int:order_id>", methods=["GET"])
@login_required
def api_order_get(order_id):
    o = order_service().get_order(current_actor(), order_id)
    return jsonify({"success": True, "order": o.to_dict()})


@app.route("/api/orders/<int:order_id>/status", methods=["PUT", "POST"])
@login_required
def api_order_set_status(order_id):
    bad = require_json()
    if bad:
        return bad

    d = request.get_json() or {}
    o = order_service().transition(current_actor(), order_id, d.get("status"))
    audit("status", "order", o.id, {"status": o.status})
    return jsonify({"success": True, "order": o.to_dict()})


@app.route("/api/orders/<int:order_id>/cancel", methods=["POST"])
@login_required
def api_order_cancel(order_id):
    o = order_service().cancel(current_actor(), order_id)
    audit("cancel", "order", o.id)
    return jsonify({"success": True, "order": o.to_dict()})


@app.route("/api/orders/<int:order_id>", methods=["DELETE"])
@require_roles("admin")
def api_order_delete(order_id):
    order_service().delete_order(current_actor(), order_id)
    audit("delete", "order", order_id)
    return jsonify({"success": True})


@app.route("/api/orders/<int:order_id>/payments", methods=["GET"])
@login_required
def api_payments_list(order_id):
    rows = payment_recorder().list_payments(order_id, actor=current_actor())
    return jsonify({"success": True, "payments": [p.to_dict() for p in rows]})


@app.route("/api/payments", methods=["POST"])
@login_required
def api_payments_add():
    bad = require_json()
    if bad:
        return bad

    req, errors = payment_request_from_payload(request.get_json(silent=True))
    if errors:
        raise ValidationError(errors=errors)

    p = payment_recorder().record_payment(
        req.order_id,
        gateway=req.gateway,
        transaction_id=req.transaction_id,
        amount=req.amount,
        status=req.status,
        method=req.method,
        paid_at=req.paid_at,
        details=req.details,
        actor=current_actor()
    )
    audit("payment", "order", req.order_id, {"payment_id": p.id, "transaction_id": p.transaction_id, "amount": str(money(p.amount))})
    return jsonify({"success": True, "payment": p.to_dict()}), 201


@app.route("/api/payments/<transaction_id>", methods=["GET"])
@login_required
def api_payment_get(transaction_id):
    p = payment_recorder().get_payment(transaction_id, actor=current_actor())
    return jsonify({"success": True, "payment": p.to_dict()})


@app.route("/api/payments/<transaction_id>/reconcile", methods=["POST"])
@require_roles("staff")
def api_payment_reconcile(transaction_id):
    o, changed = payment_recorder().reconcile(transaction_id, current_actor())
    if changed:
        audit("reconcile", "order", o.id, {"transaction_id": transaction_id, "payment_status": o.payment_status})
    return jsonify({"success": True, "changed": changed, "order": o.to_dict(include_lines=False)})


def _recent(q, n=5):
    return [o.to_dict(include_lines=False) for o in q.order_by(Order.created_at.desc(), Order.id.desc()).limit(n).all()]


@app.get("/api/dashboard")
@login_required
def api_dashboard():
    actor = current_actor()
    active = [s.value for s in ACTIVE_STATUSES]

    if actor.is_admin:
        now = now_utc()
        today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        revenue = db.session.scalar(
            select(func.sum(Order.total_amount)).where(Order.payment_status == PaymentStatus.PAID.value)
        )
        return jsonify({
            "success": True,
            "role": actor.role.value,
            "total_orders": Order.query.count(),
            "total_revenue": str(money(revenue or 0)),
            "today_orders": Order.query.filter(Order.created_at >= today_start).count(),
            "recent_orders": _recent(Order.query)
        })

    if actor.is_staff:
        return jsonify({
            "success": True,
            "role": actor.role.value,
            "active_orders": Order.query.filter(Order.status.in_(active)).count(),
            "new_orders": _recent(Order.query.filter(Order.status == OrderStatus.PENDING.value))
        })

    mine = Order.query.filter(Order.user_id == actor.user_id)
    return jsonify({
        "success": True,
        "role": actor.role.value,
        "my_orders": mine.count(),
        "my_active_orders": mine.filter(Order.status.in_(active)).count(),
        "recent_orders": _recent(mine)
    })


def build_voucher_pdf_bytes(order: Order):
    buffer = io.BytesIO()
    c = canvas.Canvas(buffer, pagesize=letter)
    width, height = letter

    c.setFont("Helvetica-Bold", 14)
    c.drawString(40, height - 50, setting_get("restaurant_name", "My Restaurant"))

    c.setFont("Helvetica", 10)
    c.drawString(40, height - 70, f"Order: {order.order_number}")
    c.drawString(40, height - 85, f"Type: {order.order_type}")
    c.drawString(40, height - 100, f"Status: {order.status}")
    if order.delivery_address:
        c.drawString(40, height - 115, f"Deliver to: {order.delivery_address[:80]}")

    y = height - 140
    c.setFont("Helvetica-Bold", 10)
    c.drawString(40, y, "Item")
    c.drawString(330, y, "Qty")
    c.drawString(380, y, "Unit")
    c.drawString(450, y, "Line")
    y -= 12
    c.line(40, y, 560, y)
    y -= 14

    c.setFont("Helvetica", 10)
    for line in order.lines:
        c.drawString(40, y, (line.name_snapshot or "")[:45])
        c.drawRightString(360, y, str(int(line.quantity)))
        c.drawRightString(430, y, f"{money(line.unit_price):.2f}")
        c.drawRightString(560, y, f"{money(line.line_total):.2f}")
        y -= 14
        if y < 100:
            c.showPage()
            y = height - 60
            c.setFont("Helvetica", 10)

    y -= 6
    c.line(40, y, 560, y)
    y -= 16
    for label, value in (
        ("Subtotal", order.subtotal),
        ("Tax", order.tax_amount),
        ("Delivery", order.delivery_fee),
    ):
        c.drawRightString(560, y, f"{label}: {money(value):.2f}")
        y -= 14
    c.setFont("Helvetica-Bold", 10)
    c.drawRightString(560, y, f"Total: {money(order.total_amount):.2f}")

    c.showPage()
    c.save()
    buffer.seek(0)
    return buffer.read()


@app.route("/api/orders/<int:order_id>/voucher.pdf", methods=["GET"])
@login_required
def api_voucher_pdf(order_id):
    o = order_service().get_order(current_actor(), order_id)
    pdf_bytes = build_voucher_pdf_bytes(o)

    audit("voucher_pdf", "order", o.id)
    return send_file(
        io.BytesIO(pdf_bytes),
        mimetype="application/pdf",
        as_attachment=True,
        download_name=f"voucher_{o.order_number}.pdf"
    )


@app.route("/api/audit-logs", methods=["GET"])
@require_roles("admin")
def api_audit_logs():
    logs = AuditLog.query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(500).all()
    out = []
    for l in logs:
        out.append({
            "id": l.id, "user_id": l.user_id, "action": l.action, "entity": l.entity,
            "entity_id": l.entity_id, "ip": l.ip, "details": l.details_json,
            "created_at": l.created_at.isoformat()
        })
    return jsonify({"success": True, "logs": out})


@app.route("/api/health", methods=["GET"])
def api_health():
    return jsonify({"success": True, "time": now_utc().isoformat()})


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    with app.app_context():
        db.create_all()
    app.run(debug=os.environ.get("FLASK_DEBUG") == "1")
