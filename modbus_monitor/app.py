import csv
import datetime
import logging
import threading
import tkinter as tk
from tkinter import filedialog, messagebox, simpledialog, ttk

from .errors import ModbusMonitorError
from .logbuffer import LOG_FILTER_VALUES, LogBufferHandler, passes_filter, setup_logging
from .monitor import DisplayFormat, Selection
from .ports import NO_PORTS_LABEL, format_port_label, normalize_device_from_label
from .session import (
    STANDARD_FUNCTION_CODES,
    ModbusSession,
    ReadRequest,
    format_address,
    is_write_command,
    parse_address,
    parse_function_code,
)
from .settings import BAUD_RATES, ConnectionSettings, load_preferences, save_preferences
from .traffic import to_hex

logger = logging.getLogger(__name__)

APP_TITLE = "Modbus Monitor"
FC_LABELS = list(STANDARD_FUNCTION_CODES.values())
FORMAT_VALUES = [f.value for f in DisplayFormat]
PARITY_VALUES = ["none", "even", "odd"]


def safe_int(s: str, default: int = 0) -> int:
    try:
        return int(str(s).strip())
    except ValueError:
        return default


def safe_float(s: str, default: float = 0.0) -> float:
    try:
        return float(str(s).strip())
    except ValueError:
        return default


def show_error(title: str, err: Exception | str):
    messagebox.showerror(title, str(err))


# ------------- Modbus monitor window -------------
class ModbusApp:
    def __init__(self, root: tk.Tk):
        self.root = root
        self.prefs = load_preferences()
        conn = ConnectionSettings.from_dict(self.prefs["connection"])
        cmd = self.prefs["command"]

        # Window basics
        self.root.title(APP_TITLE)
        try:
            self.root.geometry(self.prefs["window"]["geometry"])
        except tk.TclError:
            self.root.geometry("1100x720")
        self.root.minsize(900, 600)

        # Logging: every record from the package lands in the log panel
        self.log_handler = LogBufferHandler(
            capacity=safe_int(self.prefs["log"]["max_lines"], 100) or 100,
            listener=self._on_log_line,
        )
        setup_logging(logging.INFO, self.log_handler)

        try:
            display_format = DisplayFormat(self.prefs["display"]["data_format"])
        except ValueError:
            display_format = DisplayFormat.DEC_UNSIGNED
        self.session = ModbusSession(
            display_format=display_format,
            on_poll_error=self._on_poll_error,
        )
        self._unsubscribe = [
            self.session.monitor.subscribe(lambda _snap: self._call_in_ui(self._render_monitor)),
            self.session.traffic.subscribe(self._on_traffic),
        ]

        # Busy & spinner state
        self._io_busy_user = False

        # Connection vars
        self.conn_mode = tk.StringVar(value=conn.mode)
        self.status_var = tk.StringVar(value="Disconnected")
        self.slave_id_var = tk.StringVar(value=str(conn.slave_id))
        self.timeout_var = tk.StringVar(value=str(conn.timeout_ms))
        self.tcp_host_var = tk.StringVar(value=conn.ip_address)
        self.tcp_port_var = tk.StringVar(value=str(conn.port))
        self.rtu_port_var = tk.StringVar(value=normalize_device_from_label(conn.serial_port))
        self.rtu_baud_var = tk.StringVar(value=str(conn.baud_rate))
        self.rtu_bytesize_var = tk.StringVar(value=str(conn.data_bits))
        self.rtu_parity_var = tk.StringVar(value=conn.parity)
        self.rtu_stopbits_var = tk.StringVar(value=str(conn.stop_bits))

        # Command vars
        std_fc = safe_int(cmd["standard_fc"], 3)
        self.std_fc_var = tk.StringVar(value=STANDARD_FUNCTION_CODES.get(std_fc, FC_LABELS[2]))
        self.custom_mode_var = tk.BooleanVar(value=bool(cmd["custom_mode"]))
        self.custom_fc_var = tk.StringVar(value=cmd["custom_fc"])
        self.address_var = tk.StringVar(value=cmd["address"])
        self.addr_format_var = tk.StringVar(value=cmd["addr_format"])
        self.count_var = tk.StringVar(value=cmd["count"])
        self.data_format_var = tk.StringVar(value=self.session.monitor.display_format.value)

        # Auto read
        self.auto_read_var = tk.BooleanVar(value=False)
        self.poll_interval_var = tk.StringVar(value=self.prefs["poll"]["interval"])

        # Log panel
        self.log_filter_var = tk.StringVar(value=self.prefs["log"]["filter"])
        self.log_max_lines_var = tk.StringVar(value=self.prefs["log"]["max_lines"])
        self.show_raw_var = tk.BooleanVar(value=bool(self.prefs["log"]["show_raw"]))
        # Mirrored as a plain bool: traffic callbacks run on I/O threads
        self._show_raw = self.show_raw_var.get()
        self.show_raw_var.trace_add("write", lambda *_: setattr(self, "_show_raw", self.show_raw_var.get()))

        # UI refs set later
        self.port_combo = None
        self.conn_dot = None
        self.conn_dot_item = None
        self.btn_send = None
        self.btn_addr_format = None
        self.custom_fc_entry = None
        self.spinner = None
        self.spinner_label = None
        self.tree = None
        self.log_text = None

        self._port_label_to_device = {}

        self._build_ui()

        for var in (self.std_fc_var, self.custom_mode_var, self.custom_fc_var,
                    self.address_var, self.addr_format_var, self.count_var):
            var.trace_add("write", lambda *_: self._sync_poll_request())

        # Key bindings
        self.root.bind("<Escape>", lambda e: self._on_escape())
        self.root.bind("<Return>", lambda e: self.on_send())
        self.root.bind("<Control-c>", lambda e: self.copy_selection())

        self._update_conn_dot(False)
        self.root.protocol("WM_DELETE_WINDOW", self.on_close)
        self.refresh_serial_ports()
        self._on_custom_mode_change()

        logger.info("Application started.")

    # ----------- UI ----------
    def _build_ui(self):
        # Connection frame
        conn = ttk.LabelFrame(self.root, text="Connection")
        conn.pack(fill="x", padx=10, pady=8)

        ttk.Radiobutton(conn, text="Modbus RTU", variable=self.conn_mode, value="RTU", command=self._on_mode_change)\
            .grid(row=0, column=0, padx=(10, 6), pady=6, sticky="w")
        ttk.Radiobutton(conn, text="Modbus TCP", variable=self.conn_mode, value="TCP", command=self._on_mode_change)\
            .grid(row=0, column=1, padx=(0, 10), pady=6, sticky="w")

        # TCP fields
        ttk.Label(conn, text="IP").grid(row=1, column=0, sticky="e", padx=10)
        ttk.Entry(conn, textvariable=self.tcp_host_var, width=18).grid(row=1, column=1, sticky="w")
        ttk.Label(conn, text="Port").grid(row=1, column=2, sticky="e", padx=10)
        ttk.Entry(conn, textvariable=self.tcp_port_var, width=8).grid(row=1, column=3, sticky="w")

        # RTU fields
        ttk.Label(conn, text="Serial Port").grid(row=2, column=0, sticky="e", padx=10)
        self.port_combo = ttk.Combobox(conn, textvariable=self.rtu_port_var, values=[], width=28, state="readonly")
        self.port_combo.grid(row=2, column=1, columnspan=2, sticky="w")
        self.port_combo.bind("<<ComboboxSelected>>", self._on_port_selected)
        ttk.Button(conn, text="Scan", command=self.refresh_serial_ports).grid(row=2, column=3, sticky="w", padx=(6, 0))

        ttk.Label(conn, text="Baud").grid(row=2, column=4, sticky="e", padx=10)
        ttk.Combobox(conn, textvariable=self.rtu_baud_var, values=[str(b) for b in BAUD_RATES], width=10,
                     state="readonly").grid(row=2, column=5, sticky="w")
        ttk.Label(conn, text="Data bits").grid(row=2, column=6, sticky="e", padx=10)
        ttk.Combobox(conn, textvariable=self.rtu_bytesize_var, values=["7", "8"], width=4, state="readonly")\
            .grid(row=2, column=7, sticky="w")
        ttk.Label(conn, text="Parity").grid(row=2, column=8, sticky="e", padx=10)
        ttk.Combobox(conn, textvariable=self.rtu_parity_var, values=PARITY_VALUES, width=6, state="readonly")\
            .grid(row=2, column=9, sticky="w")
        ttk.Label(conn, text="Stop bits").grid(row=2, column=10, sticky="e", padx=10)
        ttk.Combobox(conn, textvariable=self.rtu_stopbits_var, values=["1", "2"], width=4, state="readonly")\
            .grid(row=2, column=11, sticky="w")

        # Common: slave + timeout
        ttk.Label(conn, text="Slave ID").grid(row=1, column=4, sticky="e", padx=10)
        ttk.Entry(conn, textvariable=self.slave_id_var, width=6).grid(row=1, column=5, sticky="w")
        ttk.Label(conn, text="Timeout (ms)").grid(row=1, column=6, sticky="e", padx=10)
        ttk.Entry(conn, textvariable=self.timeout_var, width=8).grid(row=1, column=7, sticky="w")

        ttk.Button(conn, text="Connect", command=self.connect).grid(row=1, column=8, padx=10, sticky="e")
        ttk.Button(conn, text="Disconnect", command=self.disconnect).grid(row=1, column=9, padx=2, sticky="w")
        ttk.Label(conn, textvariable=self.status_var, foreground="#006400")\
            .grid(row=0, column=8, columnspan=4, sticky="e", padx=10)

        # Command frame
        cmdf = ttk.LabelFrame(self.root, text="Command")
        cmdf.pack(fill="x", padx=10, pady=(2, 0))

        ttk.Label(cmdf, text="Function").grid(row=0, column=0, sticky="e", padx=(6, 6), pady=6)
        ttk.Combobox(cmdf, textvariable=self.std_fc_var, values=FC_LABELS, state="readonly", width=28)\
            .grid(row=0, column=1, sticky="w")
        ttk.Checkbutton(cmdf, text="Custom FC", variable=self.custom_mode_var, command=self._on_custom_mode_change)\
            .grid(row=0, column=2, padx=(10, 4))
        self.custom_fc_entry = ttk.Entry(cmdf, textvariable=self.custom_fc_var, width=6)
        self.custom_fc_entry.grid(row=0, column=3, sticky="w")

        ttk.Label(cmdf, text="Address").grid(row=0, column=4, sticky="e", padx=10)
        ttk.Entry(cmdf, textvariable=self.address_var, width=8).grid(row=0, column=5, sticky="w")
        self.btn_addr_format = ttk.Button(cmdf, text=self.addr_format_var.get(), width=4,
                                          command=self.toggle_addr_format)
        self.btn_addr_format.grid(row=0, column=6, padx=(4, 0))

        ttk.Label(cmdf, text="Count").grid(row=0, column=7, sticky="e", padx=10)
        ttk.Entry(cmdf, textvariable=self.count_var, width=6).grid(row=0, column=8, sticky="w")

        ttk.Label(cmdf, text="Format").grid(row=0, column=9, sticky="e", padx=10)
        fmt_combo = ttk.Combobox(cmdf, textvariable=self.data_format_var, values=FORMAT_VALUES,
                                 state="readonly", width=14)
        fmt_combo.grid(row=0, column=10, sticky="w")
        fmt_combo.bind("<<ComboboxSelected>>", lambda e: self._on_display_change())

        self.btn_send = ttk.Button(cmdf, text="Send", command=self.on_send)
        self.btn_send.grid(row=0, column=11, padx=10)

        ttk.Checkbutton(cmdf, text="Auto read", variable=self.auto_read_var, command=self.toggle_auto_read)\
            .grid(row=0, column=12, padx=(10, 4))
        ttk.Entry(cmdf, textvariable=self.poll_interval_var, width=5).grid(row=0, column=13, sticky="w")
        ttk.Label(cmdf, text="s").grid(row=0, column=14, sticky="w", padx=(2, 6))

        # Monitor table
        mon = ttk.LabelFrame(self.root, text="Register monitor")
        mon.pack(fill="both", expand=True, padx=10, pady=8)

        self.tree = ttk.Treeview(mon, columns=("addr", "value", "raw"), show="headings",
                                 height=14, selectmode="extended")
        self.tree.heading("addr", text="Address")
        self.tree.heading("value", text="Value")
        self.tree.heading("raw", text="Raw (hex)")
        self.tree.column("addr", width=140, anchor="center")
        self.tree.column("value", width=240, anchor="w")
        self.tree.column("raw", width=200, anchor="w")
        self.tree.pack(side="left", fill="both", expand=True)
        self.tree.bind("<Double-1>", self._on_cell_double_click)

        yscroll = ttk.Scrollbar(mon, orient="vertical", command=self.tree.yview)
        self.tree.configure(yscrollcommand=yscroll.set)
        yscroll.pack(side="right", fill="y")

        # Bottom bar with CSV button, spinner, and connection dot
        bottom = ttk.Frame(self.root)
        bottom.pack(fill="x", padx=10, pady=(0, 10))
        ttk.Button(bottom, text="Save table as CSV…", command=self.save_csv).pack(side="left")
        ttk.Button(bottom, text="Copy selection", command=self.copy_selection).pack(side="left", padx=(6, 0))

        self.spinner_label = ttk.Label(bottom, text="Working…")
        self.spinner = ttk.Progressbar(bottom, orient="horizontal", mode="indeterminate", length=140)

        self.conn_dot = tk.Canvas(bottom, width=16, height=16, highlightthickness=0, bg=self.root.cget("bg"))
        self.conn_dot.pack(side="right")
        self.conn_dot_item = self.conn_dot.create_oval(2, 2, 14, 14, fill="#c00000", outline="#a00000")

        # ----- LOG PANEL -----
        log_frame = ttk.LabelFrame(self.root, text="Log")
        log_frame.pack(fill="both", expand=False, padx=10, pady=(0, 10))

        toolbar = ttk.Frame(log_frame)
        toolbar.pack(fill="x", padx=6, pady=4)
        ttk.Label(toolbar, text="Filter:").pack(side="left")
        filter_combo = ttk.Combobox(toolbar, textvariable=self.log_filter_var,
                                    values=LOG_FILTER_VALUES, state="readonly", width=8)
        filter_combo.pack(side="left", padx=(4, 10))
        filter_combo.bind("<<ComboboxSelected>>", lambda e: self._rebuild_log_text())
        ttk.Label(toolbar, text="Max lines:").pack(side="left")
        max_lines = ttk.Entry(toolbar, textvariable=self.log_max_lines_var, width=8)
        max_lines.pack(side="left", padx=(4, 10))
        max_lines.bind("<FocusOut>", lambda e: self._apply_max_lines())
        ttk.Checkbutton(toolbar, text="Show raw TX/RX", variable=self.show_raw_var).pack(side="left")

        ttk.Button(toolbar, text="Clear", command=self.clear_log).pack(side="right", padx=(0, 12))
        ttk.Button(toolbar, text="Save…", command=self.export_log).pack(side="right", padx=(0, 6))
        ttk.Button(toolbar, text="Copy", command=self.copy_log).pack(side="right", padx=(0, 6))

        self.log_text = tk.Text(log_frame, height=10, wrap="word", state="disabled",
                                background="#1e1e1e", foreground="#cccccc", font=("Consolas", 10))
        self.log_text.pack(fill="both", expand=True, padx=6, pady=(0, 6))
        scroll = ttk.Scrollbar(log_frame, orient="vertical", command=self.log_text.yview)
        scroll.place(relx=1.0, rely=0.0, relheight=1.0, anchor="ne")
        self.log_text.configure(yscrollcommand=scroll.set)

        self.log_text.tag_configure("TS", foreground="#888888")
        self.log_text.tag_configure("DEBUG", foreground="#888888")
        self.log_text.tag_configure("INFO", foreground="#d0d0d0")
        self.log_text.tag_configure("WARN", foreground="#ffd166")
        self.log_text.tag_configure("ERROR", foreground="#ff6b6b")

    # ---------- Thread marshalling ----------
    def _call_in_ui(self, func):
        try:
            self.root.after(0, func)
        except (RuntimeError, tk.TclError):
            pass  # window already destroyed

    def run_in_thread(self, func):
        t = threading.Thread(target=func, daemon=True)
        t.start()

    # ---------- Serial port helpers ----------
    def refresh_serial_ports(self):
        ports = self.session.scan_serial_ports()
        labels = []
        self._port_label_to_device.clear()
        for p in ports:
            lbl = format_port_label(p)
            labels.append(lbl)
            self._port_label_to_device[lbl] = p.path
        if not labels:
            labels = [NO_PORTS_LABEL]
        self.port_combo["values"] = labels

        current_dev = normalize_device_from_label(self.rtu_port_var.get() or "")
        for lbl, dev in self._port_label_to_device.items():
            if dev == current_dev:
                self.port_combo.set(lbl)
                self.rtu_port_var.set(dev)
                return
        self.port_combo.set(labels[0])
        self.rtu_port_var.set(self._port_label_to_device.get(labels[0], ""))

    def _on_port_selected(self, event=None):
        lbl = self.port_combo.get().strip()
        self.rtu_port_var.set(self._port_label_to_device.get(lbl, ""))

    # ---------- Events ----------
    def _on_mode_change(self):
        mode = self.conn_mode.get()
        self.status_var.set(f"{mode} mode selected")
        if mode == "RTU":
            self.refresh_serial_ports()

    def _on_custom_mode_change(self):
        self.custom_fc_entry.config(state="normal" if self.custom_mode_var.get() else "disabled")

    def _on_display_change(self):
        self.session.monitor.display_format = DisplayFormat(self.data_format_var.get())
        self._render_monitor()

    def _on_escape(self):
        self.disconnect()
        self.status_var.set("Aborted / Disconnected")

    def toggle_addr_format(self):
        current = self.addr_format_var.get()
        nxt = "DEC" if current == "HEX" else "HEX"
        try:
            addr = parse_address(self.address_var.get(), current)
            self.address_var.set(format_address(addr, nxt))
        except ModbusMonitorError:
            self.address_var.set("0")
        self.addr_format_var.set(nxt)
        self.btn_addr_format.config(text=nxt)
        self._render_monitor()

    # ---------- Connection ----------
    def _gather_connection(self) -> ConnectionSettings:
        return ConnectionSettings(
            mode=self.conn_mode.get(),
            slave_id=safe_int(self.slave_id_var.get(), 1),
            timeout_ms=safe_int(self.timeout_var.get(), 1000),
            ip_address=self.tcp_host_var.get().strip(),
            port=safe_int(self.tcp_port_var.get(), 502),
            serial_port=normalize_device_from_label(self.rtu_port_var.get()),
            baud_rate=safe_int(self.rtu_baud_var.get(), 115200),
            data_bits=safe_int(self.rtu_bytesize_var.get(), 8),
            parity=self.rtu_parity_var.get() or "none",
            stop_bits=safe_int(self.rtu_stopbits_var.get(), 1),
        )

    def connect(self):
        settings = self._gather_connection()
        self.auto_read_var.set(False)
        self.session.stop_polling()
        try:
            self.session.connect(settings)
        except ModbusMonitorError as e:
            self._update_conn_dot(False)
            self.status_var.set("Disconnected")
            logger.error("Connection Error: %s", e)
            show_error("Connect error", e)
            return
        self.status_var.set(f"Connected {settings.describe()}")
        self._update_conn_dot(True)
        self._save_preferences()

    def disconnect(self):
        self.auto_read_var.set(False)
        try:
            self.session.disconnect()
        except ModbusMonitorError as e:
            logger.warning("%s", e)
        self.status_var.set("Disconnected")
        self._update_conn_dot(False)

    # ---------- Busy / spinner ----------
    def _set_busy(self, on: bool, message: str = "Working…"):
        self._io_busy_user = on
        try:
            self.btn_send.config(state="disabled" if on else "normal")
            if on:
                self.spinner_label.config(text=message)
                self.spinner_label.pack(side="right", padx=(8, 6))
                self.spinner.pack(side="right")
                self.spinner.start(10)
            else:
                self.spinner.stop()
                self.spinner.pack_forget()
                self.spinner_label.pack_forget()
        except tk.TclError:
            pass

    def _begin_command(self) -> bool:
        if not self.session.connected:
            show_error("Not connected", "Please connect first.")
            logger.warning("Command requested but not connected.")
            return False
        if self._io_busy_user:
            logger.warning("Command ignored: another operation is in progress.")
            return False
        return True

    # ---------- Command helpers ----------
    def _effective_fc(self) -> int:
        if self.custom_mode_var.get():
            return parse_function_code(self.custom_fc_var.get())
        return int(self.std_fc_var.get().split()[0])

    def _parse_target(self) -> tuple[int, int, int]:
        fc = self._effective_fc()
        addr = parse_address(self.address_var.get(), self.addr_format_var.get())
        count = safe_int(self.count_var.get(), 0) or 10
        return fc, addr, count

    def _sync_poll_request(self):
        try:
            fc, addr, count = self._parse_target()
        except ModbusMonitorError:
            self.session.poll_request = None
            return
        self.session.poll_request = ReadRequest(fc, addr, count)

    # ---------- Read / Write ----------
    def on_send(self):
        try:
            fc = self._effective_fc()
        except ModbusMonitorError as e:
            logger.error("%s", e)
            return
        if is_write_command(fc, self.custom_mode_var.get()):
            self.on_write()
        else:
            self.on_read()

    def on_read(self):
        if not self._begin_command():
            return
        try:
            fc, addr, count = self._parse_target()
        except ModbusMonitorError as e:
            logger.error("Read Error: %s", e)
            return
        if not self.custom_mode_var.get() and fc not in (1, 2, 3, 4):
            fc = 3

        def task():
            try:
                self.session.read_into_monitor(fc, addr, count)
            except ModbusMonitorError as e:
                logger.error("Read Error: %s", e)
            finally:
                self._call_in_ui(lambda: self._set_busy(False))

        self._set_busy(True, "Reading…")
        self.run_in_thread(task)

    def on_write(self):
        if not self._begin_command():
            return
        if self.session.monitor.snapshot is None:
            logger.warning("Write Error: read the range before writing it")
            return
        try:
            fc, addr, count = self._parse_target()
        except ModbusMonitorError as e:
            logger.error("Write Error: %s", e)
            return
        custom = self.custom_mode_var.get()

        def task():
            try:
                self.session.write_from_monitor(fc, addr, count, custom=custom)
            except ModbusMonitorError as e:
                logger.error("Write Error: %s", e)
            finally:
                self._call_in_ui(lambda: self._set_busy(False))

        self._set_busy(True, "Writing…")
        self.run_in_thread(task)

    # ---------- Auto read ----------
    def toggle_auto_read(self):
        if not self.auto_read_var.get():
            self.session.stop_polling()
            return
        if not self.session.connected:
            self.auto_read_var.set(False)
            show_error("Not connected", "Please connect first, then start auto read.")
            return
        interval_s = safe_float(self.poll_interval_var.get(), 2.0)
        if interval_s <= 0:
            self.auto_read_var.set(False)
            show_error("Invalid interval", "Polling interval must be > 0.")
            return
        self._sync_poll_request()
        request = self.session.poll_request
        if request is None:
            self.auto_read_var.set(False)
            show_error("Invalid command", "Check the function code and address.")
            return
        if request.function_code not in (1, 2, 3, 4):
            logger.info("FC%d is not a read; auto read will skip it.", request.function_code)
        self.session.start_polling(request, period=interval_s)

    def _on_poll_error(self, exc: Exception):
        self._call_in_ui(lambda: self.auto_read_var.set(False))

    # ---------- Monitor table ----------
    def _render_monitor(self):
        if self.tree is None:
            return
        for iid in self.tree.get_children():
            self.tree.delete(iid)
        snapshot = self.session.monitor.snapshot
        if snapshot is None:
            return
        fmt = self.session.monitor.display_format
        addr_fmt = self.addr_format_var.get()
        for index, addr, text in self.session.monitor.cells(fmt):
            label = format_address(addr, addr_fmt)
            if fmt.is_32bit:
                label += "-" + format_address(addr + 1, addr_fmt)[-2:]
            raw = snapshot.values[index:index + (2 if fmt.is_32bit else 1)]
            self.tree.insert("", "end", iid=str(index),
                             values=(label, text, " ".join(f"{r:04X}" for r in raw)))

    def _on_cell_double_click(self, event):
        iid = self.tree.identify_row(event.y)
        if not iid:
            return
        monitor = self.session.monitor
        if not monitor.display_format.editable:
            logger.info("Cells are read-only in %s format", monitor.display_format.value)
            return
        snapshot = monitor.snapshot
        if snapshot is None:
            return
        address = snapshot.start_address + int(iid)
        text = simpledialog.askstring(
            "Edit register",
            f"New value for {format_address(address, self.addr_format_var.get())}:",
            initialvalue=monitor.format_cell(int(iid)),
            parent=self.root,
        )
        if text is None:
            return
        try:
            monitor.edit_cell(address, text)
        except ModbusMonitorError as e:
            logger.error("Edit error: %s", e)

    def copy_selection(self):
        focus = self.root.focus_get()
        if isinstance(focus, (tk.Entry, ttk.Entry, tk.Text)):
            return
        selected = [int(i) for i in self.tree.selection()]
        if not selected:
            return
        text = self.session.monitor.copy_selection(Selection(selected[0], selected[-1]))
        if text:
            self.root.clipboard_clear()
            self.root.clipboard_append(text)
            logger.info("Copied %d items", len(text.split("\t")))

    def save_csv(self):
        rows = list(self.session.monitor.cells())
        if not rows:
            messagebox.showinfo("Save CSV", "No data to save.")
            return
        path = filedialog.asksaveasfilename(
            defaultextension=".csv",
            filetypes=[("CSV files", "*.csv"), ("All files", "*.*")],
            title="Save monitor as CSV"
        )
        if not path:
            return
        try:
            with open(path, "w", newline="", encoding="utf-8") as f:
                w = csv.writer(f)
                w.writerow(["Address", "Value"])
                for _, addr, text in rows:
                    w.writerow([addr, text])
        except OSError as e:
            logger.error("Save CSV error: %s", e)
            show_error("Save CSV error", e)
            return
        logger.info("Monitor CSV saved to %s", path)

    # ---------- Logging ----------
    def _on_traffic(self, entry):
        if not self._show_raw:
            return
        ts = datetime.datetime.fromtimestamp(entry.timestamp).strftime("%H:%M:%S")
        if entry.tx:
            logger.info("TX [%s] %s", ts, to_hex(entry.tx))
        if entry.rx:
            logger.info("RX [%s] %s", ts, to_hex(entry.rx))

    def _on_log_line(self, line):
        self._call_in_ui(lambda: self._append_to_log_widget(*line))

    def _append_to_log_widget(self, ts: str, level: str, message: str):
        if self.log_text is None or not passes_filter(level, self.log_filter_var.get()):
            return
        if len(self.log_handler) >= self.log_handler.capacity:
            self._rebuild_log_text()
            return
        self._insert_log_line(ts, level, message)
        self.log_text.see("end")

    def _insert_log_line(self, ts: str, level: str, message: str):
        self.log_text.configure(state="normal")
        start_index = self.log_text.index("end-1c")
        self.log_text.insert("end", f"[{ts}] [{level}] {message}\n")
        end_index = self.log_text.index("end-1c")
        self.log_text.tag_add(level, start_index, end_index)
        ts_end = self.log_text.search("]", start_index, stopindex=end_index)
        if ts_end:
            self.log_text.tag_add("TS", start_index, f"{ts_end}+1c")
        self.log_text.configure(state="disabled")

    def _rebuild_log_text(self):
        if self.log_text is None:
            return
        self.log_text.configure(state="normal")
        self.log_text.delete("1.0", "end")
        self.log_text.configure(state="disabled")
        for ts, lvl, msg in self.log_handler.get_lines(self.log_filter_var.get()):
            self._insert_log_line(ts, lvl, msg)
        self.log_text.see("end")

    def _apply_max_lines(self):
        self.log_handler.set_capacity(safe_int(self.log_max_lines_var.get(), 100))
        self._rebuild_log_text()

    def clear_log(self):
        self.log_handler.clear()
        self._rebuild_log_text()

    def copy_log(self):
        try:
            text = self.log_text.get("sel.first", "sel.last")
        except tk.TclError:
            text = ""
        if not text.strip():
            text = self.log_text.get("1.0", "end").strip("\n")
        self.root.clipboard_clear()
        self.root.clipboard_append(text)

    def export_log(self):
        path = filedialog.asksaveasfilename(
            defaultextension=".log",
            filetypes=[("Log files", "*.log"), ("Text files", "*.txt"), ("All files", "*.*")],
            title="Export log to file"
        )
        if not path:
            return
        lines = [f"[{ts}] [{lvl}] {msg}" for ts, lvl, msg in self.log_handler.get_lines(self.log_filter_var.get())]
        try:
            with open(path, "w", encoding="utf-8") as f:
                f.write("\n".join(lines) + ("\n" if lines else ""))
        except OSError as e:
            logger.error("Export log error: %s", e)
            show_error("Export log error", e)
            return
        logger.info("Log exported to %s", path)

    # ---------- Connection dot ----------
    def _update_conn_dot(self, connected: bool):
        if not self.conn_dot or not self.conn_dot_item:
            return
        color_fill = "#00a000" if connected else "#c00000"
        color_outline = "#008000" if connected else "#a00000"
        self.conn_dot.itemconfig(self.conn_dot_item, fill=color_fill, outline=color_outline)

    # ---------- Preferences ----------
    def _gather_preferences(self) -> dict:
        std_fc = self.std_fc_var.get().split()[0] if self.std_fc_var.get() else "3"
        return {
            "connection": self._gather_connection().to_dict(),
            "command": {
                "standard_fc": str(int(std_fc)),
                "custom_fc": self.custom_fc_var.get(),
                "custom_mode": bool(self.custom_mode_var.get()),
                "address": self.address_var.get(),
                "addr_format": self.addr_format_var.get(),
                "count": self.count_var.get(),
            },
            "display": {"data_format": self.data_format_var.get()},
            "poll": {"interval": self.poll_interval_var.get()},
            "log": {
                "filter": self.log_filter_var.get(),
                "max_lines": self.log_max_lines_var.get(),
                "show_raw": bool(self.show_raw_var.get()),
            },
            "window": {"geometry": self.root.winfo_geometry()},
        }

    def _save_preferences(self):
        save_preferences(self._gather_preferences())

    def on_close(self):
        self._save_preferences()
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self.session.close()
        logger.info("Application closed.")
        logging.getLogger("modbus_monitor").removeHandler(self.log_handler)
        self.root.destroy()


def main():
    root = tk.Tk()
    ModbusApp(root)
    root.mainloop()


if __name__ == "__main__":
    main()
