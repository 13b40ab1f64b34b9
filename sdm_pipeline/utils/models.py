import numpy as np
import elapid as ela
from scipy.stats import pointbiserialr
from sklearn.metrics import roc_auc_score
from sklearn.inspection import permutation_importance


def _auc_scorer(estimator, X, y):
    """Скорер для permutation_importance: ROC AUC по непрерывному прогнозу."""
    return roc_auc_score(y, estimator.predict(X))


def compute_thresholds(p_scores, a_scores, sensitivity=0.9):
    """
    Пороги классификации по прогнозам в точках присутствия и фона.

    Перебираются все уникальные значения прогноза, для каждого считается матрица ошибок
    (прогноз >= порога - "присутствие").

    Returns:
        dict: kappa, spec_sens, no_omission, prevalence, equal_sens_spec, sensitivity
    """
    p_scores = np.sort(np.asarray(p_scores, dtype=float))
    a_scores = np.sort(np.asarray(a_scores, dtype=float))
    n_p, n_a = len(p_scores), len(a_scores)
    if n_p == 0 or n_a == 0:
        raise ValueError("Для расчёта порогов нужны и точки присутствия, и фоновые точки.")

    t = np.unique(np.concatenate([p_scores, a_scores]))
    tp = n_p - np.searchsorted(p_scores, t, side='left')
    fp = n_a - np.searchsorted(a_scores, t, side='left')
    fn = n_p - tp
    tn = n_a - fp
    n = n_p + n_a

    tpr = tp / n_p
    tnr = tn / n_a

    prob_obs = (tp + tn) / n
    prob_exp = ((tp + fn) * (tp + fp) + (fp + tn) * (fn + tn)) / n ** 2
    with np.errstate(divide='ignore', invalid='ignore'):
        kappa = np.where(prob_exp < 1, (prob_obs - prob_exp) / (1 - prob_exp), 0.0)

    prevalence_obs = n_p / n
    prevalence_mod = (tp + fp) / n

    return {
        'kappa': float(t[np.argmax(kappa)]),
        'spec_sens': float(t[np.argmax(tpr + tnr)]),
        'no_omission': float(p_scores.min()),
        'prevalence': float(t[np.argmin(np.abs(prevalence_mod - prevalence_obs))]),
        'equal_sens_spec': float(t[np.argmin(np.abs(tpr - tnr))]),
        'sensitivity': float(t[np.argmin(np.abs(tpr - sensitivity))]),
    }


class MaxEnt:
    """
    Модель максимальной энтропии (MaxEnt) для моделирования ареала вида.

    Обёртка над elapid.MaxentModel: признаки linear/quadratic/hinge,
    регуляризация beta_multiplier, выход в шкале [0, 1] (logistic или cloglog).

    Args:
        band_names (list[str]): Имена предикторов в порядке колонок X.
        feature_types (list[str]): Типы признаков MaxEnt.
        beta_multiplier (float): Множитель регуляризации.
        transform (str): Шкала выхода модели.
    """
    def __init__(self, band_names, feature_types=('linear', 'quadratic', 'hinge'),
                 beta_multiplier=1.0, transform='logistic'):
        self.band_names = list(band_names)
        self.n_features = len(self.band_names)
        self.feature_types = list(feature_types)
        self.beta_multiplier = beta_multiplier
        self.transform = transform
        self.model = ela.MaxentModel(
            feature_types=self.feature_types,
            beta_multiplier=beta_multiplier,
            transform=transform,
        )
        self.fitted = False

    def _check_X(self, X):
        X = np.asarray(X, dtype=float)
        if X.ndim == 1:
            X = X.reshape(-1, 1)
        if X.shape[1] != self.n_features:
            raise ValueError(f"Ожидалось {self.n_features} признаков, но получено {X.shape[1]}.")
        return X

    def fit(self, X_pres, X_bg):
        """Обучает модель по точкам присутствия (y=1) и фона (y=0)."""
        X_pres = self._check_X(X_pres)
        X_bg = self._check_X(X_bg)
        X = np.vstack((X_pres, X_bg))
        y = np.array([1] * len(X_pres) + [0] * len(X_bg))

        print(f"Обучение MaxEnt: присутствий {len(X_pres)}, фоновых точек {len(X_bg)}")
        self.model.fit(X, y)
        self.fitted = True
        return self

    def predict(self, X):
        """Пригодность местообитания в [0, 1] для каждой строки X."""
        if not self.fitted:
            raise RuntimeError("Модель не была обучена. Вызовите метод .fit() сначала.")
        X = self._check_X(X)
        return np.clip(np.asarray(self.model.predict(X), dtype=float).ravel(), 0.0, 1.0)

    def predict_proba(self, X):
        """Две колонки: (1 - пригодность, пригодность), как у классификаторов sklearn."""
        p = self.predict(X)
        return np.column_stack((1 - p, p))

    def evaluate(self, X_pres, X_bg):
        """
        Оценка модели на точках присутствия и фона.

        Returns:
            dict: auc, cor (точечно-бисериальная корреляция), np, na, thresholds
        """
        p_scores = self.predict(X_pres)
        a_scores = self.predict(X_bg)
        y = np.concatenate([np.ones(len(p_scores)), np.zeros(len(a_scores))])
        scores = np.concatenate([p_scores, a_scores])

        auc = float(roc_auc_score(y, scores))
        if np.all(scores == scores[0]):
            cor = float('nan')
        else:
            cor = float(pointbiserialr(y, scores)[0])

        return {
            'auc': auc,
            'cor': cor,
            'np': len(p_scores),
            'na': len(a_scores),
            'thresholds': compute_thresholds(p_scores, a_scores),
        }

    def variable_importance(self, X_pres, X_bg, n_repeats=10, random_state=None):
        """
        Вклад и пермутационная важность переменных, в процентах (сумма 100).

        Вклад: падение обучающего AUC, если переменную заменить её средним по фону.
        Пермутационная важность: падение AUC при перемешивании значений переменной.

        Returns:
            dict: {'contribution': {name: %}, 'permutation': {name: %}}
        """
        X_pres = self._check_X(X_pres)
        X_bg = self._check_X(X_bg)
        X = np.vstack((X_pres, X_bg))
        y = np.array([1] * len(X_pres) + [0] * len(X_bg))

        base_auc = roc_auc_score(y, self.predict(X))
        drops = np.zeros(self.n_features)
        bg_means = X_bg.mean(axis=0)
        for j in range(self.n_features):
            X_neutral = X.copy()
            X_neutral[:, j] = bg_means[j]
            drops[j] = base_auc - roc_auc_score(y, self.predict(X_neutral))

        perm = permutation_importance(self.model, X, y, scoring=_auc_scorer,
                                      n_repeats=n_repeats, random_state=random_state)

        return {
            'contribution': dict(zip(self.band_names, _to_percent(drops))),
            'permutation': dict(zip(self.band_names, _to_percent(perm.importances_mean))),
        }

    def save(self, path):
        ela.save_object(self, path)
        return path

    @staticmethod
    def load(path):
        model = ela.load_object(path)
        if not isinstance(model, MaxEnt):
            raise ValueError(f"Файл {path} не содержит модель MaxEnt")
        return model


def _to_percent(values):
    values = np.clip(np.asarray(values, dtype=float), 0, None)
    total = values.sum()
    if total <= 0:
        return [0.0] * len(values)
    return list(values / total * 100)
